"""Root CLI group, version flag and logging options."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from termport import __version__
from termport.commands.demo import demo
from termport.commands.init import init
from termport.commands.probe import probe

_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="termport")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write logs to this file (the terminal belongs to the helper).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum level written to the log file.",
)
def cli(log_file: Path | None, log_level: str) -> None:
    """termport — drive a terminal-rendering helper over its line protocol."""
    if log_file is not None:
        logging.basicConfig(
            filename=log_file,
            level=log_level.upper(),
            format=_LOG_FORMAT,
            force=True,
        )
    else:
        logging.getLogger("termport").addHandler(logging.NullHandler())


cli.add_command(init)
cli.add_command(probe)
cli.add_command(demo)
