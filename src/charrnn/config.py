# SPDX-License-Identifier: Apache-2.0

"""Configuration for charrnn.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is strict: mis-typed keys or invalid values fail fast with error
messages that tell you exactly what to fix. Validation errors are
`ConfigurationError`s (a `ValueError`), which are fatal at startup.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

from charrnn.types import ConfigurationError

CellKind = Literal["lstm", "gru", "rnn"]
DeviceKind = Literal["auto", "gpu", "cpu"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CELL_KINDS = ("lstm", "gru", "rnn")


@dataclass(frozen=True)
class ModelConfig:
    """Recurrent cell configuration.

    `cell`, `hidden_size` and `num_layers` are structural: when resuming they are
    taken from the checkpoint. `vocab_size` is never configured; the corpus
    decides it.
    """

    cell: CellKind = "lstm"
    hidden_size: int = 128
    num_layers: int = 2
    dropout: float = 0.0

    # Uniform init range for every parameter, then the LSTM forget-gate bias.
    init_range: float = 0.05
    forget_bias: float = 1.0


@dataclass(frozen=True)
class DataConfig:
    """Corpus configuration.

    `data_dir` must contain `input.txt`. The loader caches `vocab.json` and
    `data.npy` next to it. test fraction is `1 - train_frac - val_frac`.
    """

    data_dir: str = "data/tinyshakespeare"
    input_file: str = "input.txt"
    train_frac: float = 0.95
    val_frac: float = 0.05


@dataclass(frozen=True)
class TrainConfig:
    """Optimizer loop configuration."""

    seed: int = 123
    batch_size: int = 50
    seq_length: int = 50
    max_epochs: int = 50

    log_every: int = 1
    eval_every: int = 1000
    # Cap on validation batches per evaluation; None => whole split.
    eval_max_batches: int | None = None

    # Device: "auto" uses a GPU when present, "gpu" warns and falls back to CPU
    # when none is available, "cpu" never touches an accelerator.
    device: DeviceKind = "auto"
    gpu_id: int = 0
    # Block on results before reading the timer (JAX dispatch is async).
    accurate_timing: bool = False
    jit: bool = True


@dataclass(frozen=True)
class OptimConfig:
    """RMSProp, learning-rate decay, clipping and divergence thresholds."""

    learning_rate: float = 2e-3
    decay_rate: float = 0.95
    eps: float = 1e-8

    # Exponential decay applied at epoch boundaries once epoch >= lr_decay_after.
    lr_decay: float = 0.97
    lr_decay_after: float = 10.0

    grad_clip: float = 5.0
    # Abort as "exploding" when loss > explode_factor * first loss.
    explode_factor: float = 3.0


@dataclass(frozen=True)
class CheckpointConfig:
    """Orbax checkpointing configuration.

    Checkpoints are written at every validation pass (train.eval_every and the
    final iteration). `init_from` may point at a run dir, checkpoint root or
    step dir of another run to warm-start this one.
    """

    enabled: bool = True
    # If None, checkpoints live under <run_dir>/checkpoints
    root_dir: str | None = None
    max_to_keep: int = 5
    async_save: bool = False
    init_from: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "charrnn"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"
    progress: bool = True


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs for a training run."""

    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    checkpoint: CheckpointConfig = CheckpointConfig()
    logging: LoggingConfig = LoggingConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="train.batch_size", raw_value="4"

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field.
    :param str raw_value: String value, cast to the current field's type.
    :raises ConfigurationError: If the path contains unknown keys.
    :return Any: New dataclass with the field updated.
    """

    parts = path.split(".")
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ConfigurationError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ConfigurationError(f"Unknown config key: {path!r} (missing {leaf!r})")

    new = _cast_like(getattr(cur, leaf), raw_value)

    # Rebuild frozen dataclasses from the bottom up
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ConfigurationError: If the cast fails.
    :return Any: Value cast to the type of `old`.
    """

    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ConfigurationError(f"Expected boolean, got {raw!r}")
    if isinstance(old, (int, float)):
        try:
            return type(old)(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Cannot cast override {raw!r} to {type(old).__name__}"
            ) from e
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        # Default is None: parse a YAML scalar to recover numeric/bool types.
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError:
            return raw
        return raw if parsed is None else parsed
    return raw


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Convert nested dict into Config dataclasses.

    :param dict[str, Any] data: Nested dictionary from YAML parsing.
    :raises ConfigurationError: On unknown sections or keys.
    :return Config: Fully constructed Config.
    """

    sections = {
        "model": ModelConfig,
        "data": DataConfig,
        "train": TrainConfig,
        "optim": OptimConfig,
        "checkpoint": CheckpointConfig,
        "logging": LoggingConfig,
    }
    unknown = sorted(set(data) - set(sections))
    if unknown:
        raise ConfigurationError(f"Unknown config sections: {unknown}")

    built: dict[str, Any] = {}
    for name, cls in sections.items():
        try:
            built[name] = cls(**(data.get(name) or {}))
        except TypeError as e:
            raise ConfigurationError(f"Invalid keys in config section {name!r}: {e}") from e
    return Config(**built)


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "train.max_epochs=20".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides.
    :raises ConfigurationError: If an override is malformed or validation fails.
    :return Config: Validated configuration object.
    """

    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    cfg = _from_nested_dict(data)

    if overrides:
        for o in overrides:
            if "=" not in o:
                raise ConfigurationError(
                    f"Invalid override {o!r}. Expected format like train.max_epochs=20"
                )
            k, v = o.split("=", 1)
            cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ConfigurationError with a standardized prefix.

    :param str msg: Validation failure message.
    :raises ConfigurationError: Always.
    """
    raise ConfigurationError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    """Validate model-related config fields."""
    m = cfg.model
    if m.cell not in CELL_KINDS:
        _vfail(f"model.cell must be one of {CELL_KINDS}, got {m.cell!r}")
    if m.hidden_size <= 0:
        _vfail(f"model.hidden_size must be positive, got {m.hidden_size}")
    if m.num_layers <= 0:
        _vfail(f"model.num_layers must be positive, got {m.num_layers}")
    if not 0.0 <= m.dropout < 1.0:
        _vfail(f"model.dropout must be in [0, 1), got {m.dropout}")
    if m.init_range <= 0:
        _vfail(f"model.init_range must be positive, got {m.init_range}")


def _validate_data(cfg: Config) -> None:
    """Validate corpus split fractions."""
    d = cfg.data
    if not d.data_dir:
        _vfail("data.data_dir must be non-empty")
    if not 0.0 < d.train_frac <= 1.0:
        _vfail(f"data.train_frac must be in (0, 1], got {d.train_frac}")
    if not 0.0 <= d.val_frac < 1.0:
        _vfail(f"data.val_frac must be in [0, 1), got {d.val_frac}")
    if d.train_frac + d.val_frac > 1.0 + 1e-9:
        _vfail(
            f"data.train_frac + data.val_frac must be <= 1, got {d.train_frac} + {d.val_frac}"
        )


def _validate_train(cfg: Config) -> None:
    """Validate training-loop config fields."""
    t = cfg.train
    if t.batch_size <= 0:
        _vfail(f"train.batch_size must be positive, got {t.batch_size}")
    if t.seq_length <= 0:
        _vfail(f"train.seq_length must be positive, got {t.seq_length}")
    if t.max_epochs <= 0:
        _vfail(f"train.max_epochs must be positive, got {t.max_epochs}")
    if t.log_every <= 0:
        _vfail(f"train.log_every must be positive, got {t.log_every}")
    if t.eval_every <= 0:
        _vfail(f"train.eval_every must be positive, got {t.eval_every}")
    if t.eval_max_batches is not None and t.eval_max_batches <= 0:
        _vfail(f"train.eval_max_batches must be positive when set, got {t.eval_max_batches}")
    if t.device not in ("auto", "gpu", "cpu"):
        _vfail(f"train.device must be 'auto', 'gpu' or 'cpu', got {t.device!r}")
    if t.gpu_id < 0:
        _vfail(f"train.gpu_id must be >= 0, got {t.gpu_id}")


def _validate_optim(cfg: Config) -> None:
    """Validate optimizer-related config fields."""
    o = cfg.optim
    if o.learning_rate <= 0:
        _vfail(f"optim.learning_rate must be positive, got {o.learning_rate}")
    if not 0.0 < o.decay_rate < 1.0:
        _vfail(f"optim.decay_rate must be in (0, 1), got {o.decay_rate}")
    if o.eps <= 0:
        _vfail(f"optim.eps must be positive, got {o.eps}")
    if o.lr_decay <= 0:
        _vfail(f"optim.lr_decay must be positive, got {o.lr_decay}")
    if o.lr_decay_after < 0:
        _vfail(f"optim.lr_decay_after must be >= 0, got {o.lr_decay_after}")
    if o.grad_clip < 0:
        _vfail(f"optim.grad_clip must be >= 0 (0 disables clipping), got {o.grad_clip}")
    if o.explode_factor <= 1:
        _vfail(f"optim.explode_factor must be > 1, got {o.explode_factor}")


def _validate_checkpoint(cfg: Config) -> None:
    """Validate checkpoint-related config fields."""
    if cfg.checkpoint.max_to_keep <= 0:
        _vfail(f"checkpoint.max_to_keep must be positive, got {cfg.checkpoint.max_to_keep}")
    if cfg.checkpoint.init_from is not None and not str(cfg.checkpoint.init_from).strip():
        _vfail("checkpoint.init_from must be a non-empty path or null")


def _validate_logging(cfg: Config) -> None:
    """Validate logging-related config fields."""
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_train(cfg)
    _validate_optim(cfg)
    _validate_checkpoint(cfg)
    _validate_logging(cfg)


def split_fractions(cfg: Config) -> tuple[float, float, float]:
    """Resolve (train, val, test) fractions; test takes whatever is left.

    :param Config cfg: Training configuration.
    :return tuple[float, float, float]: Split fractions.
    """
    test = max(0.0, 1.0 - (cfg.data.train_frac + cfg.data.val_frac))
    return cfg.data.train_frac, cfg.data.val_frac, test
