"""Command-line entry points for rlexec and rltee."""

from __future__ import annotations

import asyncio
import signal
import threading
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from rich.pretty import pretty_repr

from rlexec import __version__
from rlexec.config import DEFAULT_PROMPT, load_settings
from rlexec.errors import ConfigurationError, SetupError
from rlexec.logging_utils import configure_logging, resolve_level
from rlexec.session import Session
from rlexec.types import ExitOutcome

RLEXEC = "rlexec"
RLTEE = "rltee"
SETUP_ERROR_EXIT_CODE = 1
SIGTERM_EXIT_CODE = 128 + signal.SIGTERM

rlexec_app = typer.Typer(
    name=RLEXEC,
    help="Read lines interactively and feed them to a command, teeing its stdout to a file.",
    add_completion=False,
)
rltee_app = typer.Typer(
    name=RLTEE,
    help="Read lines interactively and record them to a file.",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _explicit_flags(ctx: typer.Context, **values: Any) -> dict[str, Any]:
    """Keep only the options the user actually passed on the command line."""
    explicit: dict[str, Any] = {}
    for name, value in values.items():
        # typer may vendor its own click, so match the enum member by name.
        source = ctx.get_parameter_source(name)
        if source is not None and source.name == "COMMANDLINE":
            explicit[name] = value
    return explicit


@rlexec_app.command(context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True})
def rlexec(
    ctx: typer.Context,
    command: list[str] | None = typer.Argument(None, help="Command to run and its arguments"),  # noqa: B008
    config: Path | None = typer.Option(None, "--config", "-c", help='config file (default "rlexec.yml")'),  # noqa: B008
    output: str = typer.Option("", "--output", "-o", help="output file"),
    history: Path | None = typer.Option(None, "--history", "-H", help="history file"),  # noqa: B008
    prompt: str = typer.Option(DEFAULT_PROMPT, "--prompt", "-p", help="prompt"),
    buffered: bool = typer.Option(False, "--buffered/--no-buffered", "-r", help="use buffer for output"),
    temp: bool = typer.Option(False, "--temp/--no-temp", "-t", help="use tempfile for output"),
    log_level: str = typer.Option("", "--log-level", help="log level"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="verbose output"),
    debug: bool = typer.Option(False, "--debug", help="debug output"),
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="show version"
    ),
) -> None:
    """Feed interactive lines to COMMAND; with no COMMAND, record them."""
    overrides = _explicit_flags(
        ctx,
        output=output,
        history=history,
        prompt=prompt,
        buffered=buffered,
        temp=temp,
        log_level=log_level,
    )
    run_command(RLEXEC, config=config, overrides=overrides, verbose=verbose, debug=debug, command=command)


@rltee_app.command()
def rltee(
    ctx: typer.Context,
    output: str = typer.Argument(..., help="output file"),
    config: Path | None = typer.Option(None, "--config", "-c", help='config file (default "rltee.yml")'),  # noqa: B008
    history: Path | None = typer.Option(None, "--history", "-H", help="history file"),  # noqa: B008
    buffered: bool = typer.Option(False, "--buffered/--no-buffered", "-b", help="use buffer for output"),
    temp: bool = typer.Option(False, "--temp/--no-temp", "-t", help="use tempfile for output"),
    log_level: str = typer.Option("", "--log-level", help="log level"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="verbose output"),
    debug: bool = typer.Option(False, "--debug", help="debug output"),
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="show version"
    ),
) -> None:
    """Record interactive lines to OUTPUT."""
    overrides = _explicit_flags(ctx, history=history, buffered=buffered, temp=temp, log_level=log_level)
    overrides.update(output=output, prompt=DEFAULT_PROMPT)
    run_command(RLTEE, config=config, overrides=overrides, verbose=verbose, debug=debug)


def run_command(
    command_name: str,
    *,
    config: Path | None,
    overrides: dict[str, Any],
    verbose: bool,
    debug: bool,
    command: list[str] | None = None,
) -> None:
    """Resolve settings, run one session and exit with its status."""
    configure_logging(resolve_level(verbose=verbose, debug=debug))
    try:
        settings, config_file = load_settings(command_name, config_file=config, overrides=overrides)
    except ConfigurationError as exc:
        logger.error("{}.config.error error={}", command_name, exc)
        raise typer.Exit(SETUP_ERROR_EXIT_CODE) from exc

    if settings.log_level:
        configure_logging(resolve_level(verbose=verbose, debug=debug, log_level=settings.log_level))
    if config_file is not None:
        logger.debug("{}.config.file path={}", command_name, config_file)
    logger.debug("{}.config.settings {}", command_name, pretty_repr(settings.model_dump()))

    session = Session(settings, output=settings.output, command=command, prefix=f"{command_name}-")
    try:
        outcome = asyncio.run(run_session(session))
    except SetupError as exc:
        logger.error("{}.setup.error error={}", command_name, exc)
        raise typer.Exit(SETUP_ERROR_EXIT_CODE) from exc
    except asyncio.CancelledError:
        logger.warning("{}.cancelled", command_name)
        raise typer.Exit(SIGTERM_EXIT_CODE) from None
    raise typer.Exit(outcome.exit_code)


async def run_session(session: Session) -> ExitOutcome:
    """Run a session, cancelling it on SIGTERM and interrupting the pending read on SIGINT."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    handle_signals = task is not None and threading.current_thread() is threading.main_thread()
    if handle_signals:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
        loop.add_signal_handler(signal.SIGINT, session.interrupt)
    try:
        return await session.run()
    finally:
        if handle_signals:
            loop.remove_signal_handler(signal.SIGTERM)
            loop.remove_signal_handler(signal.SIGINT)
