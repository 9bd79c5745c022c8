"""Checkpoint path resolution and metadata reading.

These helpers work on the on-disk layout only (no Orbax objects), so they can
run before a model exists, e.g. to read the vocabulary and model shape that a
checkpoint was trained with.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def _is_step_dir(path: Path) -> bool:
    """Return True if the path looks like a checkpoint step directory.

    :param Path path: Path to inspect.
    :return bool: True if the directory contains a train_state subdir.
    """
    return path.is_dir() and (path / "train_state").exists()


def _list_step_dirs(root: Path) -> list[Path]:
    """List numeric step directories under a checkpoint root, oldest first."""
    if not root.is_dir():
        return []
    steps = [p for p in root.iterdir() if p.is_dir() and p.name.isdigit()]
    steps.sort(key=lambda p: int(p.name))
    return steps


def latest_step_dir(root: Path) -> Path | None:
    """Return the latest step dir with train_state, if any."""
    for step_dir in reversed(_list_step_dirs(root)):
        if _is_step_dir(step_dir):
            return step_dir
    return None


def _find_run_dir_upwards(start: Path) -> Path | None:
    """Search upwards for a directory containing config_resolved.json."""
    for parent in (start, *start.parents):
        if (parent / "config_resolved.json").exists():
            return parent
    return None


def _read_json(path: Path) -> dict[str, Any]:
    """Read a JSON object from disk.

    :raises ValueError: If the file holds something other than an object.
    """
    with path.open(encoding="utf-8") as f:
        data = json.load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return data


def read_checkpoint_meta(step_dir: Path) -> dict[str, Any] | None:
    """Read the JSON metadata item of a checkpoint step, if present.

    :param Path step_dir: Checkpoint step directory.
    :raises ValueError: If the metadata file is corrupted.
    :return dict[str, Any] | None: Metadata mapping, or None if missing.
    """
    meta_dir = Path(step_dir) / "meta"
    meta_path = meta_dir / "metadata" if meta_dir.is_dir() else meta_dir
    if not meta_path.exists():
        return None
    try:
        return _read_json(meta_path)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Corrupted checkpoint metadata in {meta_path}: {exc}") from exc


def _ckpt_root_for_run_dir(run_dir: Path) -> Path:
    """Checkpoint root of a run, honouring checkpoint.root_dir in its config snapshot."""
    try:
        cfg = _read_json(run_dir / "config_resolved.json")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Corrupted config_resolved.json in {run_dir}: {exc}") from exc
    root = (cfg.get("checkpoint") or {}).get("root_dir")
    if not root:
        return run_dir / "checkpoints"
    root_path = Path(root)
    return root_path if root_path.is_absolute() else run_dir / root_path


def resolve_checkpoint_path(checkpoint_path: str | Path) -> tuple[Path, Path | None]:
    """Resolve a user-supplied checkpoint path to a step directory.

    Supports:
    - a step directory: /path/to/checkpoints/500
    - a checkpoint root: /path/to/checkpoints (latest step wins)
    - a run directory with config_resolved.json (latest step of its checkpoints)

    :param str | Path checkpoint_path: Path to resolve.
    :raises FileNotFoundError: If no checkpoint step can be found.
    :return tuple[Path, Path | None]: (step_dir, run_dir); run_dir may be None.
    """
    path = Path(checkpoint_path).resolve()

    if _is_step_dir(path):
        return path, _find_run_dir_upwards(path)

    if (path / "config_resolved.json").exists():
        ckpt_root = _ckpt_root_for_run_dir(path)
        step_dir = latest_step_dir(ckpt_root)
        if step_dir is None:
            raise FileNotFoundError(f"No step directories found in {ckpt_root}")
        return step_dir, path

    step_dir = latest_step_dir(path)
    if step_dir is not None:
        return step_dir, _find_run_dir_upwards(path)

    raise FileNotFoundError(
        f"Could not find checkpoint at {path}. Provide a run_dir, checkpoint root, or step dir."
    )
