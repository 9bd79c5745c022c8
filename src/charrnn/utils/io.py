"""Filesystem + metrics logging utilities.

Deliberately boring IO:
- a run directory containing config snapshots, train.log and metrics.jsonl
- JSONL is append-only and survives a crash mid-run

If you resume into an existing run_dir, the original config snapshot is kept
and a `config_resume.json` is written alongside it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from charrnn.config import Config

_NOISY_CONSOLE_PREFIXES = ("orbax", "jax", "jaxlib", "absl")
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


class _ConsoleNoiseFilter(logging.Filter):
    """Hide noisy third-party INFO logs from the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        for prefix in _NOISY_CONSOLE_PREFIXES:
            if record.name.startswith(prefix):
                return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    if use_rich:
        handler: logging.Handler = RichHandler(show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))

    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure the root logger with a single console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: Use Rich for console output.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> None:
    """Attach a file handler that captures all logs (idempotent per path).

    :param Path path: Log file path.
    :param str level: Log level name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path.resolve()):
            return
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(file_handler)


def remove_file_logging(path: Path) -> None:
    """Detach and close the file handler for `path`, if attached."""
    root = logging.getLogger()
    target = str(path.resolve())
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            root.removeHandler(handler)
            handler.close()


def create_run_dir(
    cfg: Config, *, config_path: str | Path | None, allow_existing: bool = False
) -> Path:
    """Create (or reuse) a run directory.

    - logging.run_dir unset: always a fresh timestamped dir under runs/<project>/.
    - logging.run_dir set and missing: created.
    - logging.run_dir set and present: reused only when allow_existing (resume),
      otherwise refused so a finished run is never clobbered.

    :param Config cfg: Training configuration.
    :param config_path: Original YAML config, copied into fresh run dirs.
    :param bool allow_existing: Allow reusing an existing directory.
    :raises RuntimeError: If the directory exists and allow_existing=False, or
        resume was requested without a run_dir.
    :return Path: The run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists():
            if not allow_existing:
                raise RuntimeError(
                    f"Run dir already exists: {run_dir}. "
                    "Refusing to clobber. Set logging.run_dir to a new path or pass --resume."
                )
        else:
            run_dir.mkdir(parents=True, exist_ok=False)
    else:
        if allow_existing:
            raise RuntimeError(
                "Resume requested but logging.run_dir is null. "
                "Set logging.run_dir to an existing run directory to resume."
            )
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
        run_dir.mkdir(parents=True, exist_ok=False)

    snapshot = json.dumps(cfg.to_dict(), indent=2, sort_keys=True)
    if (run_dir / "config_resolved.json").exists() and allow_existing:
        (run_dir / "config_resume.json").write_text(snapshot)
    else:
        (run_dir / "config_resolved.json").write_text(snapshot)
        if config_path is not None:
            src = Path(config_path)
            if src.exists():
                (run_dir / "config_original.yaml").write_text(src.read_text())

    return run_dir


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Line-buffered: every row is on disk before the next iteration starts.
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")

    def close(self) -> None:
        self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

