"""Main CLI entry point.

Defines the Click group and shared utilities.
"""

from __future__ import annotations

import click

from charrnn import __version__


def parse_resume(raw: str) -> str | int:
    """Parse the --resume argument.

    :param str raw: Raw string from --resume.
    :raises click.BadParameter: If raw is not a valid resume value.
    :return str | int: "none", "latest", or an iteration number.
    """
    raw = raw.strip().lower()
    if raw in {"none", "no", "false", "0"}:
        return "none"
    if raw in {"latest", "last"}:
        return "latest"
    try:
        step = int(raw)
    except ValueError as e:
        raise click.BadParameter(
            f"Invalid resume value {raw!r}. Use 'none', 'latest', or an integer step."
        ) from e
    if step < 0:
        raise click.BadParameter(f"Resume step must be non-negative, got {step}.")
    return step


@click.group()
@click.version_option(version=__version__, prog_name="charrnn")
def cli() -> None:
    """charrnn: train character-level LSTM/GRU/RNN language models with truncated BPTT."""


# Import and register subcommands
from charrnn.cli.train import train  # noqa: E402

cli.add_command(train)
