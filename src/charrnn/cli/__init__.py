"""CLI entrypoints for charrnn.

Invoked via ``pyproject.toml`` entrypoints::

    charrnn train <config.yaml> ...

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from charrnn.cli.main import cli
