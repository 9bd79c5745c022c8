"""Core pytrees, shared types and the error taxonomy.

Keep this file small: it defines the **runtime contracts** between subsystems.

- `Batch` is what the loader yields (after device transfer) and the engine consumes.
- `TrainState` is arrays-only (checkpoint friendly) by construction.

**Batch contract**

  input_ids: [B, T] int32
  labels:    [B, T] int32

where B = batch_size and T = seq_length. `labels[:, t]` is the character that
follows `input_ids[:, t]` in the corpus.

**Errors**

Configuration problems are `ValueError`s, training aborts are `RuntimeError`s.
Callers that only care about "fatal at startup" vs "fatal mid-run" can catch
the builtin base classes.
"""

from __future__ import annotations

from typing import Any

import equinox as eqx
import jax
import numpy as np


class Batch(eqx.Module):
    """A fixed-shape training batch."""

    input_ids: jax.Array
    labels: jax.Array

    @classmethod
    def from_numpy(cls, x: np.ndarray, y: np.ndarray) -> Batch:
        """Move a loader batch onto the default device.

        :param np.ndarray x: Input ids of shape [B, T].
        :param np.ndarray y: Target ids of shape [B, T].
        :return Batch: Device-resident batch.
        """
        return cls(
            input_ids=jax.device_put(np.asarray(x, dtype=np.int32)),
            labels=jax.device_put(np.asarray(y, dtype=np.int32)),
        )


class TrainState(eqx.Module):
    """Arrays-only state for checkpointing.

    Do **not** store modules or clones here. `params` is the flat parameter
    buffer; everything else in the model is rebuilt from config.
    """

    step: jax.Array
    params: jax.Array
    opt_state: Any
    rng: jax.Array


class ConfigurationError(ValueError):
    """Invalid hyperparameters, incompatible checkpoint, unusable corpus."""


class TrainingAborted(RuntimeError):
    """Base class for fatal conditions detected inside the optimizer loop."""

    reason = "aborted"

    def __init__(self, message: str, *, step: int | None = None):
        super().__init__(message)
        self.step = step


class NumericalDivergence(TrainingAborted):
    """Loss or gradient norm became NaN/inf. No update was applied."""

    reason = "numerical_divergence"


class LossExplosion(TrainingAborted):
    """Loss grew beyond the configured multiple of the first observed loss."""

    reason = "loss_explosion"


class StaleCloneError(RuntimeError):
    """A clone still points at a parameter buffer that has since been re-flattened."""
