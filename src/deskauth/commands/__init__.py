"""Built-in CLI sub-commands for deskauth.

* :mod:`~deskauth.commands.auth` -- ``login``, ``refresh`` and ``whoami``,
  registered directly on the root app.
* :mod:`~deskauth.commands.config` -- view and modify persisted settings
  through the ``config`` sub-application.
"""
