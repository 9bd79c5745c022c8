"""Train subcommand."""

from __future__ import annotations

from dataclasses import replace

import click

from charrnn.cli.main import parse_resume
from charrnn.config import load_config
from charrnn.types import ConfigurationError, TrainingAborted
from charrnn.utils.io import setup_python_logging


@click.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. train.max_epochs=10 (repeatable).",
)
@click.option(
    "--run-dir",
    type=click.Path(),
    default=None,
    help="Override logging.run_dir (required for resume).",
)
@click.option(
    "--resume",
    "resume_raw",
    type=str,
    default="none",
    help="Resume from checkpoint: 'none' (default), 'latest', or an iteration number.",
)
@click.option(
    "--init-from",
    type=click.Path(exists=True),
    default=None,
    help="Warm-start parameters from a run dir, checkpoint root or step dir.",
)
@click.option(
    "--max-steps",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many iterations (the run can be resumed later).",
)
def train(
    config: str,
    overrides: tuple[str, ...],
    run_dir: str | None,
    resume_raw: str,
    init_from: str | None,
    max_steps: int | None,
) -> None:
    """Train a character-level language model.

    CONFIG is the path to a YAML config file.
    """
    resume = parse_resume(resume_raw)
    try:
        cfg = load_config(config, overrides=list(overrides))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    if run_dir is not None:
        cfg = replace(cfg, logging=replace(cfg.logging, run_dir=run_dir))
    if init_from is not None:
        cfg = replace(cfg, checkpoint=replace(cfg.checkpoint, init_from=init_from))

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)

    from charrnn.train import run

    try:
        run_dir_path = run(cfg, config_path=config, resume=resume, max_steps=max_steps)
    except (ConfigurationError, TrainingAborted) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"[charrnn] run_dir: {run_dir_path}")
