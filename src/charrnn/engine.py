"""Training step engine: truncated BPTT over per-timestep clones.

One call to `TrainingEngine.step` is one optimizer iteration, in this order:

1) zero the shared gradient buffer
2) forward t = 0..T-1 (training mode, fresh dropout key per timestep),
   keeping every timestep's states and log-probs
3) loss = sum of per-timestep NLL / T
4) backward t = T-1..0; the state gradient starts at zero at the last step
   (nothing downstream), each clone *adds* its parameter gradients
5) carry the final state into the next call (stateful truncated BPTT)
6) global L2 norm; NaN/inf loss or norm raises `NumericalDivergence`
   before anything is updated
7) clip by global norm (optax, uniform scale, direction preserved)
8) RMSProp update written back into the arena; grad_param_ratio is the
   clipped gradient norm over the updated parameter norm

The time loop is plain Python on purpose: each timestep depends on the last,
and the per-cell math underneath is compiled.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import optax

from charrnn.cells import CellGraph, States
from charrnn.config import OptimConfig
from charrnn.params import ParamArena
from charrnn.types import Batch, NumericalDivergence
from charrnn.unroll import NLLCriterion, clone_many_times

logger = logging.getLogger(__name__)


def build_optimizer(cfg: OptimConfig) -> optax.GradientTransformation:
    """RMSProp with the learning rate exposed as a mutable hyperparameter.

    `eps` is added outside the square root: step = lr * g / (sqrt(ms) + eps).
    """
    return optax.inject_hyperparams(optax.rmsprop, static_args=("eps_in_sqrt",))(
        learning_rate=cfg.learning_rate,
        decay=cfg.decay_rate,
        eps=cfg.eps,
        eps_in_sqrt=False,
    )


def clip_by_global_norm(grads: Any, max_norm: float | None) -> Any:
    """Scale `grads` by max_norm / norm when the global norm exceeds max_norm."""
    if not max_norm:
        return grads
    clipped, _ = optax.clip_by_global_norm(max_norm).update(grads, optax.EmptyState())
    return clipped


def _check_finite_metrics(metrics: dict[str, Any], *, step: int) -> None:
    """Raise `NumericalDivergence` if a tracked metric is NaN/inf."""
    for key in ("loss", "grad_norm"):
        if key not in metrics:
            continue
        value = float(metrics[key])
        if not math.isfinite(value):
            raise NumericalDivergence(
                f"Non-finite {key} at step {step}: {value}. No update was applied.",
                step=step,
            )


class TrainingEngine:
    """Owns the clone set, optimizer state and the carried recurrent state.

    :param CellGraph proto: Flattened prototype cell.
    :param ParamArena arena: The shared buffer `proto` was flattened into.
    :param int batch_size: Minibatch rows (B).
    :param int seq_length: Unroll length (T), i.e. number of clones.
    :param OptimConfig optim: Optimizer / clipping settings.
    :param jax.Array key: PRNG key for dropout.
    :param bool jit: Compile the per-cell math and the update.
    """

    def __init__(
        self,
        proto: CellGraph,
        arena: ParamArena,
        *,
        batch_size: int,
        seq_length: int,
        optim: OptimConfig,
        key: jax.Array,
        jit: bool = True,
    ):
        self.proto = proto
        self.arena = arena
        self.batch_size = batch_size
        self.seq_length = seq_length
        self.grad_clip = optim.grad_clip if optim.grad_clip > 0 else None
        self.key = key
        self.step_count = 0

        self.clones = clone_many_times(proto, seq_length, jit=jit)
        self.criterion = NLLCriterion()
        self.optimizer = build_optimizer(optim)
        self.opt_state = self.optimizer.init(arena.values)
        self.state: States = proto.init_state(batch_size)

        def update(grads, opt_state, values):
            grads = clip_by_global_norm(grads, self.grad_clip)
            updates, opt_state = self.optimizer.update(grads, opt_state, values)
            return grads, optax.apply_updates(values, updates), opt_state

        self._update = eqx.filter_jit(update) if jit else update

    @property
    def learning_rate(self) -> float:
        return float(self.opt_state.hyperparams["learning_rate"])

    @learning_rate.setter
    def learning_rate(self, value: float) -> None:
        old = self.opt_state.hyperparams["learning_rate"]
        dtype = jnp.asarray(old).dtype
        self.opt_state.hyperparams["learning_rate"] = jnp.asarray(value, dtype=dtype)

    def reset_state(self) -> None:
        """Zero the carried state (sequence boundary)."""
        self.state = self.proto.init_state(self.batch_size)

    def _check_batch(self, batch: Batch) -> None:
        shape = tuple(batch.input_ids.shape)
        if shape != (self.batch_size, self.seq_length) or tuple(batch.labels.shape) != shape:
            raise ValueError(
                f"Expected input_ids/labels of shape {(self.batch_size, self.seq_length)}, "
                f"got {shape} / {tuple(batch.labels.shape)}"
            )

    def _forward(
        self, x: jax.Array, y: jax.Array, init_state: States, keys: jax.Array | None
    ) -> tuple[jax.Array, list[States], list[jax.Array]]:
        states: list[States] = [init_state]
        predictions: list[jax.Array] = []
        loss = jnp.zeros((), dtype=jnp.float32)
        for t, clone in enumerate(self.clones):
            out = clone.forward(x[t], *states[t], key=None if keys is None else keys[t])
            states.append(tuple(out[:-1]))
            predictions.append(out[-1])
            loss = loss + self.criterion.forward(out[-1], y[t])
        return loss / self.seq_length, states, predictions

    def step(self, batch: Batch) -> dict[str, float]:
        """Run one truncated-BPTT iteration and update the parameters.

        :param Batch batch: input_ids/labels of shape [B, T].
        :raises NumericalDivergence: If loss or gradient norm is not finite.
        :return dict: loss, grad_norm (pre-clip), grad_param_ratio (post-update), lr.
        """
        self._check_batch(batch)
        x = batch.input_ids.T
        y = batch.labels.T

        self.arena.zero_grad()
        for clone in self.clones:
            clone.training()

        self.key, step_key = jax.random.split(self.key)
        keys = jax.random.split(step_key, self.seq_length)
        loss, states, predictions = self._forward(x, y, self.state, keys)

        d_state = tuple(jnp.zeros_like(s) for s in self.state)
        for t in reversed(range(self.seq_length)):
            d_log_probs = self.criterion.backward(predictions[t], y[t])
            d_state = self.clones[t].backward(*d_state, d_log_probs)

        self.state = states[-1]

        metrics = {
            "loss": float(loss),
            "grad_norm": float(optax.tree.norm(self.arena.grads)),
            "lr": self.learning_rate,
        }
        _check_finite_metrics(metrics, step=self.step_count)

        self.arena.grads, self.arena.values, self.opt_state = self._update(
            self.arena.grads, self.opt_state, self.arena.values
        )
        # Clipped gradient over updated parameters.
        param_norm = float(optax.tree.norm(self.arena.values))
        clipped_norm = float(optax.tree.norm(self.arena.grads))
        metrics["grad_param_ratio"] = clipped_norm / param_norm if param_norm > 0 else float("inf")
        self.step_count += 1
        return metrics

    def evaluate(
        self, loader: Any, split: str = "val", max_batches: int | None = None
    ) -> float | None:
        """Mean per-step loss over a split, dropout off.

        The state starts at zero and is carried across batches. The training
        carry state is left untouched.

        :return float | None: Mean loss, or None if the split is empty.
        """
        n = loader.split_size(split)
        if max_batches is not None:
            n = min(n, max_batches)
        if n == 0:
            return None

        loader.reset_cursor(split)
        for clone in self.clones:
            clone.evaluate()

        state = self.proto.init_state(self.batch_size)
        total = 0.0
        for _ in range(n):
            batch = Batch.from_numpy(*loader.next_batch(split))
            self._check_batch(batch)
            loss, states, _ = self._forward(batch.input_ids.T, batch.labels.T, state, None)
            state = states[-1]
            total += float(loss)

        for clone in self.clones:
            clone.training()
        return total / n
