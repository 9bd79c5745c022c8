"""Checkpointing (Orbax) for charrnn.

"Resume" is a contract, not a nice-to-have: the flat parameter buffer, RMSProp
accumulators, PRNG key, loader cursors and loss history all come back, or
the run refuses to start.

We save four logical items per step directory:
- train_state: arrays-only pytree (`TrainState`) via StandardSave
- data_state:  loader cursors (JSON)
- history:     train losses per iteration, val losses by iteration, current
               learning rate, first observed loss (JSON)
- meta:        config snapshot, vocabulary, epoch, latest val loss, versions (JSON)

`meta` is plain JSON on disk, so it can be read (see
`charrnn.utils.checkpoints.read_checkpoint_meta`) before the model is built.
That is how the model shape and vocabulary of a checkpoint are checked first.

Orbax notes: we use the `args=` API and keep all Orbax calls in this module.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import Any

import jax
import orbax.checkpoint as ocp

from charrnn.config import Config
from charrnn.types import ConfigurationError

logger = logging.getLogger(__name__)

ITEM_NAMES = ("train_state", "data_state", "history", "meta")

# Model fields a checkpoint dictates on resume; everything else comes from the
# current config.
STRUCTURAL_MODEL_FIELDS = ("cell", "hidden_size", "num_layers")


@dataclass(frozen=True)
class CheckpointMeta:
    """Metadata stored alongside checkpoints. Keep this JSON-serialisable."""

    step: int
    epoch: float
    val_loss: float | None
    timestamp: str

    python: str
    jax: str | None
    orbax: str | None
    charrnn: str

    config: dict[str, Any]
    vocab: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _safe_version(pkg: str) -> str | None:
    try:
        return metadata.version(pkg)
    except metadata.PackageNotFoundError:
        return None


def build_meta(
    *,
    step: int,
    epoch: float,
    val_loss: float | None,
    config: dict[str, Any],
    vocab: dict[str, int],
) -> CheckpointMeta:
    """Build checkpoint metadata with version info and a config snapshot.

    :param int step: Iteration the checkpoint was taken at.
    :param float epoch: Fractional epoch at that iteration.
    :param val_loss: Latest validation loss (None if there is no val split).
    :param dict[str, Any] config: Full config dict.
    :param dict[str, int] vocab: Character -> id mapping.
    :return CheckpointMeta: Populated metadata.
    """
    return CheckpointMeta(
        step=int(step),
        epoch=float(epoch),
        val_loss=None if val_loss is None else float(val_loss),
        timestamp=datetime.now().isoformat(timespec="seconds"),
        python=platform.python_version(),
        jax=_safe_version("jax"),
        orbax=_safe_version("orbax-checkpoint"),
        charrnn=_safe_version("charrnn") or "0.0.0",
        config=config,
        vocab=dict(vocab),
    )


def default_ckpt_dir(run_dir: Path) -> Path:
    return run_dir / "checkpoints"


def ckpt_dir_for(cfg: Config, run_dir: Path) -> Path:
    """Checkpoint root for a run: checkpoint.root_dir (relative to run_dir) or the default."""
    if cfg.checkpoint.root_dir is None:
        return default_ckpt_dir(run_dir)
    root = Path(cfg.checkpoint.root_dir)
    return root if root.is_absolute() else run_dir / root


def make_manager(
    ckpt_dir: Path, *, max_to_keep: int | None, async_save: bool
) -> ocp.CheckpointManager:
    """Create an Orbax CheckpointManager.

    Saving cadence is decided by the driver, so every `save` call is honoured.

    :param Path ckpt_dir: Directory for checkpoint storage.
    :param max_to_keep: Maximum number of checkpoints to retain (None keeps all).
    :param bool async_save: Enable asynchronous saving.
    :return ocp.CheckpointManager: Configured manager.
    """
    ckpt_dir = Path(ckpt_dir).resolve()
    ckpt_dir.mkdir(parents=True, exist_ok=True)
    options = ocp.CheckpointManagerOptions(
        max_to_keep=max_to_keep,
        save_interval_steps=1,
        create=True,
        enable_async_checkpointing=async_save,
    )
    return ocp.CheckpointManager(directory=str(ckpt_dir), item_names=ITEM_NAMES, options=options)


def save(
    manager: ocp.CheckpointManager,
    *,
    step: int,
    train_state: Any,
    data_state: dict[str, Any],
    history: dict[str, Any],
    meta: CheckpointMeta,
) -> None:
    """Save one checkpoint step.

    :param ocp.CheckpointManager manager: Orbax checkpoint manager.
    :param int step: Iteration number (step directory name).
    :param Any train_state: `TrainState` pytree (arrays only).
    :param dict data_state: Loader cursor state.
    :param dict history: Loss history and schedule state.
    :param CheckpointMeta meta: Checkpoint metadata.
    """
    manager.save(
        int(step),
        args=ocp.args.Composite(
            train_state=ocp.args.StandardSave(train_state),
            data_state=ocp.args.JsonSave(data_state),
            history=ocp.args.JsonSave(history),
            meta=ocp.args.JsonSave(meta.to_dict()),
        ),
    )


def abstractify_tree(tree: Any) -> Any:
    """Convert a pytree of arrays to ShapeDtypeStructs for Orbax restore."""
    return jax.tree_util.tree_map(lambda x: jax.ShapeDtypeStruct(x.shape, x.dtype), tree)


def _restore(
    manager: ocp.CheckpointManager, step: int, abstract_train_state: Any
) -> dict[str, Any]:
    restored = manager.restore(
        int(step),
        args=ocp.args.Composite(
            train_state=ocp.args.StandardRestore(abstract_train_state),
            data_state=ocp.args.JsonRestore(),
            history=ocp.args.JsonRestore(),
            meta=ocp.args.JsonRestore(),
        ),
    )
    return {name: restored.get(name) for name in ITEM_NAMES}


def restore_at_step(
    manager: ocp.CheckpointManager, *, step: int, abstract_train_state: Any
) -> tuple[int, dict[str, Any]]:
    """Restore the checkpoint at a specific step.

    :raises FileNotFoundError: If that step was never saved (or was pruned).
    :return tuple: (step, items) with items keyed by `ITEM_NAMES`.
    """
    step = int(step)
    if step not in manager.all_steps():
        raise FileNotFoundError(f"No checkpoint for step {step} in {manager.directory}")
    return step, _restore(manager, step, abstract_train_state)


def restore_step_dir(step_dir: Path, *, abstract_train_state: Any) -> tuple[int, dict[str, Any]]:
    """Restore a checkpoint given its step directory (used for init_from)."""
    step_dir = Path(step_dir).resolve()
    manager = make_manager(step_dir.parent, max_to_keep=None, async_save=False)
    try:
        return restore_at_step(
            manager, step=int(step_dir.name), abstract_train_state=abstract_train_state
        )
    finally:
        manager.close()


def check_vocab_compat(vocab: dict[str, int], meta: dict[str, Any] | None) -> None:
    """Require the checkpoint vocabulary to equal the current one.

    Same size and the same character -> id assignment.

    :param dict[str, int] vocab: Current vocabulary.
    :param meta: Checkpoint metadata (or None if missing).
    :raises ConfigurationError: On missing metadata or any mismatch.
    """
    if meta is None or not isinstance(meta.get("vocab"), dict):
        raise ConfigurationError("Checkpoint meta has no vocabulary; cannot verify compatibility.")
    ckpt_vocab = {str(k): int(v) for k, v in meta["vocab"].items()}
    if len(ckpt_vocab) != len(vocab):
        raise ConfigurationError(
            f"Character vocabulary mismatch: checkpoint has {len(ckpt_vocab)} symbols, "
            f"the dataset has {len(vocab)}."
        )
    changed = sorted(c for c, i in ckpt_vocab.items() if vocab.get(c) != i)
    if changed:
        sample = ", ".join(repr(c) for c in changed[:5])
        raise ConfigurationError(
            f"Character vocabulary mismatch: {len(changed)} symbol(s) map to different ids "
            f"than in the checkpoint (e.g. {sample})."
        )


def apply_checkpoint_model(cfg: Config, meta: dict[str, Any] | None) -> Config:
    """Take the structural model fields from checkpoint metadata.

    Warns about every field that differs from the current config.

    :param Config cfg: Current config.
    :param meta: Checkpoint metadata.
    :raises ConfigurationError: If the metadata has no model config.
    :return Config: Config with cell/hidden_size/num_layers from the checkpoint.
    """
    model_prev = ((meta or {}).get("config") or {}).get("model")
    if not isinstance(model_prev, dict):
        raise ConfigurationError("Checkpoint meta has no model config; cannot rebuild the model.")
    updates: dict[str, Any] = {}
    for field in STRUCTURAL_MODEL_FIELDS:
        prev = model_prev.get(field)
        cur = getattr(cfg.model, field)
        if prev is not None and prev != cur:
            updates[field] = prev
    if updates:
        changes = ", ".join(
            f"model.{k}={v!r} (was {getattr(cfg.model, k)!r})" for k, v in updates.items()
        )
        logger.warning("Overwriting %s based on the checkpoint.", changes)
        cfg = replace(cfg, model=replace(cfg.model, **updates))
    return cfg
