"""``pumplink`` command line.

Exit codes: ``0`` clean shutdown, ``1`` configuration error, ``3``
runtime error.  Typer itself exits ``2`` on a bad flag value.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from pumplink._settings import LoggingSettings

if TYPE_CHECKING:
    from pumplink._app import PumpService
    from pumplink._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def _choice(value: str | None, allowed: tuple[str, ...], flag: str) -> str | None:
    """Normalise *value* to one of *allowed* or reject the flag."""
    if value is None:
        return None
    for candidate in allowed:
        if candidate.lower() == value.lower():
            return candidate
    raise typer.BadParameter(
        f"{value!r} is not one of {', '.join(allowed)}",
        param_hint=f"'{flag}'",
    )


def _load_settings(service: PumpService, env_file: str, overrides: dict[str, str]) -> Settings:
    try:
        settings: Settings = service._settings_class(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc
    if overrides:
        settings.logging = settings.logging.model_copy(update=overrides)
    return settings


def build_cli(service: PumpService) -> typer.Typer:
    """Wrap *service* in a single-command Typer app."""
    cli = typer.Typer(help=f"{service._name} v{service._version}: {service._description}")

    @cli.callback(invoke_without_command=True)
    def run(
        show_version: Annotated[
            bool,
            typer.Option("--version", is_eager=True, help="Print the version and exit."),
        ] = False,
        dry_run: Annotated[
            bool,
            typer.Option("--dry-run", help="Accept commands but never publish them to devices."),
        ] = False,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help=f"One of {', '.join(LEVELS)}."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help=f"One of {', '.join(FORMATS)}."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Dotenv file with PUMPLINK_* variables."),
        ] = ".env",
    ) -> None:
        if show_version:
            typer.echo(f"{service._name} v{service._version}")
            raise typer.Exit()

        overrides = {
            key: value
            for key, value in (
                ("level", _choice(log_level, LEVELS, "--log-level")),
                ("format", _choice(log_format, FORMATS, "--log-format")),
            )
            if value is not None
        }
        service._dry_run = dry_run
        settings = _load_settings(service, env_file, overrides)

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(service._run_async(settings=settings))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Service stopped with an error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main() -> None:
    """Console-script entry point for ``pumplink``."""
    from pumplink import PumpService, __version__

    PumpService(version=__version__).cli()
