"""Interface for ``python -m ads_stream``."""

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer

from . import __version__
from .config import load_config
from .connector import AdsInput
from .errors import AdsStreamError
from .logging import VERBOSE
from .pipeline import StreamMessage, run_input

__all__ = ["main"]

app = typer.Typer(no_args_is_help=True)


class LogLevel(str, Enum):
    critical = "CRITICAL"
    error = "ERROR"
    warning = "WARNING"
    info = "INFO"
    debug = "DEBUG"
    verbose = "VERBOSE"


ConfigArgument = Annotated[
    Path,
    typer.Argument(
        help="YAML file holding the adsComm input configuration.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]

LogLevelOption = Annotated[
    LogLevel,
    typer.Option(help="Set the process logging level.", case_sensitive=False),
]


def version_callback(value: bool):
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(  # noqa
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Print the version and exit",
    ),
):
    """Stream symbol values from a Beckhoff PLC over ADS."""
    pass


def _configure_logging(log_level: LogLevel) -> None:
    level_value = (
        VERBOSE if log_level is LogLevel.verbose else getattr(logging, log_level.value)
    )
    logging.basicConfig(
        level=level_value,
        format="%(asctime)s.%(msecs)03d --%(name)s-- %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _make_input(config_file: Path) -> AdsInput:
    try:
        return AdsInput(load_config(config_file))
    except AdsStreamError as err:
        typer.echo(f"Error: {err}", err=True)
        raise typer.Exit(code=2) from err


async def _write_batch(batch: list[StreamMessage]) -> None:
    for message in batch:
        typer.echo(message.to_json())


async def _stream(ads_input: AdsInput) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Signal handlers aren't available on Windows event loops.
            pass
    await run_input(ads_input, _write_batch, stop)


async def _list_symbols(ads_input: AdsInput) -> None:
    try:
        await ads_input.connect()
        for binding in ads_input.bindings:
            typer.echo(str(binding))
    finally:
        await ads_input.close()


@app.command()
def run(config_file: ConfigArgument, log_level: LogLevelOption = LogLevel.info):
    """
    Connect to the PLC described in CONFIG_FILE and print every delivered message
    as a JSON line, reconnecting whenever the connection is lost.
    """
    _configure_logging(log_level)
    ads_input = _make_input(config_file)
    try:
        asyncio.run(_stream(ads_input))
    except AdsStreamError as err:
        typer.echo(f"Error: {err}", err=True)
        raise typer.Exit(code=1) from err


@app.command()
def symbols(config_file: ConfigArgument, log_level: LogLevelOption = LogLevel.warning):
    """
    Resolve the symbols configured in CONFIG_FILE and print their location
    in the PLC memory.
    """
    _configure_logging(log_level)
    ads_input = _make_input(config_file)
    try:
        asyncio.run(_list_symbols(ads_input))
    except AdsStreamError as err:
        typer.echo(f"Error: {err}", err=True)
        raise typer.Exit(code=1) from err


if __name__ == "__main__":
    app()
