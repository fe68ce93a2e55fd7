"""termport probe — start the helper, report its size, and shut it down."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from termport.config import ConfigError, TermportConfig, load_config, resolve_helper_path
from termport.errors import TermportError
from termport.session import TermSession


def prepare(config_path: Path | None, helper: str | None) -> tuple[TermportConfig, Path]:
    """Load the config and pick the helper, turning failures into click errors."""
    try:
        config = load_config(config_path)
        helper_path = resolve_helper_path(config, helper)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    return config, helper_path


async def _probe(config: TermportConfig, helper_path: Path) -> tuple[int | None, int, int]:
    async with TermSession(helper_path, config=config) as term:
        width = await term.width()
        height = await term.height()
        return term.pid, width, height


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to termport.yaml (default: ./termport.yaml if present).",
)
@click.option("--helper", default=None, help="Helper executable, overriding the config.")
def probe(config_path: Path | None, helper: str | None) -> None:
    """Connect to the helper and print its terminal size."""
    config, helper_path = prepare(config_path, helper)
    try:
        pid, width, height = asyncio.run(_probe(config, helper_path))
    except TermportError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"helper {helper_path} (pid {pid}): {width}x{height}")
