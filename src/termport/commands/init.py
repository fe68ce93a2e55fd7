"""termport init — write a starter termport.yaml."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "termport.yaml"

TEMPLATE_YAML = """\
# termport configuration
version: "1"

helper:
  # Helper executable. When unset, $TERMPORT_HELPER is used, then
  # `termbox_port` on PATH.
  # path: /usr/local/bin/termbox_port

  # What to do with the helper's stderr: log (DEBUG), inherit, discard
  stderr: log

# Deadlines in seconds
timeouts:
  handshake: 10     # wait for the helper's `OK <address>` line
  connect: 5        # open the duplex channel
  command: 5        # default per-command deadline
  shutdown: 2       # grace period after `shutdown` before SIGTERM
  terminate: 3      # wait after SIGTERM before SIGKILL

protocol:
  max_line_bytes: 65536   # largest unterminated line (0 to disable)
  desync_threshold: 3     # mismatched responses before a command fails (0 to disable)

# Wire trace (one JSONL file per session)
# trace:
#   enabled: true
#   dir: traces
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing termport.yaml if it exists.",
)
def init(force: bool) -> None:
    """Write a commented termport.yaml in the current directory."""
    target = Path.cwd() / CONFIG_FILENAME
    if target.exists() and not force:
        raise click.ClickException(
            f"{target.name} already exists here; pass --force to replace it."
        )

    try:
        target.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Could not write {target}: {exc}") from exc
    click.echo(f"  Created {target.name}")

    click.echo()
    click.echo("Next steps:")
    click.echo(f"  1. Point helper.path in {CONFIG_FILENAME} at your helper binary")
    click.echo("  2. Run `termport probe` to check the connection")
