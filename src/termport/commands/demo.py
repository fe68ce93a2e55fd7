"""termport demo — draw a greeting and wait for `q`."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from termport.commands.probe import prepare
from termport.config import TermportConfig
from termport.errors import TermportError
from termport.protocol.models import EventType
from termport.session import QueueObserver, TermSession

logger = logging.getLogger(__name__)

GREETING = "Hello from termport"
HINT = "press q to quit"

# Foreground/background attributes in the helper's default palette.
_FG = 3
_BG = 0


async def _demo(config: TermportConfig, helper_path: Path, timeout: float) -> bool:
    """Run the demo; True if the user pressed q before *timeout*."""
    observer = QueueObserver()
    try:
        async with TermSession(helper_path, observer, config) as term:
            await _draw(term)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while (remaining := deadline - loop.time()) > 0:
                try:
                    event = await observer.next_event(timeout=remaining)
                except TimeoutError:
                    return False
                if event.type is EventType.KEY and event.char in ("q", "Q"):
                    return True
                if event.type is EventType.RESIZE:
                    logger.info("Terminal resized to %dx%d", event.w, event.h)
                    await _draw(term)
            return False
    finally:
        observer.close()


async def _draw(term: TermSession) -> None:
    await term.clear()
    width = await term.width()
    height = await term.height()
    for offset, text in enumerate((GREETING, HINT)):
        x = max(0, (width - len(text)) // 2)
        await term.print(x, height // 2 + offset, _FG, _BG, text)
    await term.present()


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to termport.yaml (default: ./termport.yaml if present).",
)
@click.option("--helper", default=None, help="Helper executable, overriding the config.")
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=30.0,
    show_default=True,
    help="Seconds to wait for a key press.",
)
def demo(config_path: Path | None, helper: str | None, timeout: float) -> None:
    """Draw a greeting through the helper and wait for `q`."""
    config, helper_path = prepare(config_path, helper)
    try:
        quit_by_key = asyncio.run(_demo(config, helper_path, timeout))
    except TermportError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Bye." if quit_by_key else f"No key press within {timeout:g}s.", err=True)
