"""Typer application and CLI entry point for deskauth.

The CLI is a thin front-end over :mod:`deskauth.auth`: ``login`` runs the
browser sign-in, ``refresh`` trades a refresh token for a new access token,
``whoami`` resolves the identity behind an access token and ``config``
manages the persisted :class:`~deskauth.models.Settings`.

Tokens are printed to stdout and never stored; the caller decides where
they go.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. Unhandled exceptions are written to a crash log under
the data directory.

See Also:
    :mod:`deskauth.config`: Settings and client registration loading.
    :mod:`deskauth.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.logging import RichHandler

from deskauth import __version__
from deskauth.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE
from deskauth.output import OutputManager


app = typer.Typer(
    name="deskauth",
    help="Sign in to Google APIs from the desktop with OAuth2 + PKCE.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"deskauth {__version__}")
        raise typer.Exit()


def _configure_logging(output: OutputManager) -> None:
    """Route the library's log records to stderr through Rich.

    ``--verbose`` shows everything down to DEBUG, ``--quiet`` only errors.
    """
    handler = RichHandler(
        console=output.stderr_console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger("deskauth")
    logger.handlers = [handler]
    logger.propagate = False
    if output.is_verbose:
        logger.setLevel(logging.DEBUG)
    elif output.is_quiet:
        logger.setLevel(logging.ERROR)
    else:
        logger.setLevel(logging.WARNING)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Skip confirmations."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~deskauth.output.OutputManager` and the
    ``deskauth`` logger from CLI flags, and stores shared options in
    ``ctx.obj``.
    """
    from deskauth.output import OutputFormat, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    _configure_logging(output)

    ctx.ensure_object(dict)
    ctx.obj["force"] = force
    ctx.obj["verbose"] = verbose


# ------------------------------------------------------------------ #
# Built-in commands
# ------------------------------------------------------------------ #

from deskauth.commands.auth import login_command, refresh_command, whoami_command  # noqa: E402
from deskauth.commands.config import config_app  # noqa: E402

app.command("login")(login_command)
app.command("refresh")(refresh_command)
app.command("whoami")(whoami_command)
app.add_typer(config_app, name="config", help="View and change settings.")


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly.

    ``sys.exit`` unwinds through ``finally`` blocks, so an in-flight
    sign-in still releases its callback port.
    """

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from deskauth.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``deskauth`` console script.

    :class:`~deskauth.exceptions.DeskauthError` instances that escape a
    command cause a clean exit with the error's ``exit_code``. All other
    exceptions produce a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)
    except Exception as exc:
        from deskauth.exceptions import DeskauthError
        from deskauth.output import error

        if isinstance(exc, DeskauthError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
