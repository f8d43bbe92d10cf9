"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~deskauth.exceptions.DeskauthError` subclass.
Wrapper scripts can inspect the exit code to tell a declined consent from a
busy callback port without parsing stderr.

Example::

    $ deskauth login client_secret.json
    $ echo $?
    4   # EXIT_LISTENER_ERROR -- the callback port is already taken
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or configuration."""

EXIT_AUTH_FAILURE = 3
"""Authentication did not complete (denied, mismatched state, rejected code or refresh)."""

EXIT_LISTENER_ERROR = 4
"""The local callback listener could not bind its port."""

EXIT_TIMEOUT = 5
"""No callback arrived before the deadline, or the attempt was cancelled."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred talking to the identity provider."""

EXIT_BROWSER_ERROR = 7
"""The system browser could not be launched."""

EXIT_CANCELLED = 130
"""The user interrupted the command (Ctrl-C)."""
