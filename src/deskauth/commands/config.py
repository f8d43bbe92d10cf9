"""Config commands -- view and modify settings.

Provides the ``deskauth config`` sub-command group for reading, updating,
and resetting the persisted :class:`~deskauth.models.Settings` (callback
timeout, listener interface, HTTP timeout, identity endpoint and whether
to launch the browser).
"""

from __future__ import annotations

import typer

from deskauth.output import error, format_response, info, success


config_app = typer.Typer(no_args_is_help=True)

_READ_ONLY = {"app_version"}


@config_app.command("show")
def config_show() -> None:
    """Show current settings, including environment overrides.

    Example::

        deskauth config show
        deskauth config show --json
    """
    from deskauth.config import get_config_dir, resolve_settings
    from deskauth.exceptions import DeskauthError

    try:
        settings = resolve_settings()
    except DeskauthError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    info(f"Config directory: {get_config_dir()}")
    format_response(settings.model_dump(mode="json"))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(help="Setting name, e.g. 'callback_timeout'."),
    value: str = typer.Argument(help="Value to set."),
) -> None:
    """Set a setting value.

    The value is coerced to the field's type and validated before it is
    saved.

    Raises:
        typer.Exit: With code 2 if the key is unknown or the value is
            invalid.

    Example::

        deskauth config set callback_timeout 120
        deskauth config set open_browser false
    """
    from pydantic import ValidationError

    from deskauth.config import load_settings, save_settings
    from deskauth.exceptions import DeskauthError
    from deskauth.models import Settings

    if key not in Settings.model_fields or key in _READ_ONLY:
        error(f"Unknown setting: {key}")
        raise typer.Exit(code=2)

    try:
        data = load_settings().model_dump(mode="json", exclude=_READ_ONLY)
        data[key] = value
        new_settings = Settings.model_validate(data)
    except DeskauthError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    except ValidationError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=2) from None

    save_settings(new_settings)
    success(f"Set {key} = {getattr(new_settings, key)}")


@config_app.command("reset")
def config_reset(
    ctx: typer.Context,
) -> None:
    """Reset settings to defaults.

    Asks for confirmation unless ``--force`` is active.

    Example::

        deskauth config reset
        deskauth --force config reset
    """
    from deskauth.config import save_settings
    from deskauth.models import Settings

    force = ctx.obj.get("force", False) if ctx.obj else False
    if not force:
        confirmed = typer.confirm("Reset all settings to defaults?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    save_settings(Settings())
    success("Settings reset to defaults.")
