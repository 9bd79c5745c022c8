"""Time-unrolled clones of a prototype cell.

Each `CellClone` is one timestep of one minibatch. Clones share the prototype's
parameter storage through `ParamView`s (no values are copied) and keep their own
activations: a training-mode `forward` records a `jax.vjp` closure for that
timestep only, and `backward` replays it, adds the parameter gradients into the
shared arena and hands back the gradient for the previous states.

Chaining timesteps together is the engine's job; a clone knows nothing about
its neighbours.

Clones must be built *after* `flatten`. A clone whose arena was later retired
raises `StaleCloneError` instead of silently training a dead buffer.
"""

from __future__ import annotations

from collections.abc import Callable

import jax
import jax.numpy as jnp

from charrnn.cells import CellGraph, RecurrentCore, apply_core
from charrnn.params import ParamView
from charrnn.types import StaleCloneError


class CellClone:
    """One timestep instance of a prototype cell."""

    def __init__(self, core: RecurrentCore, views: dict[str, ParamView], *, jit: bool = True):
        self.core = core
        self.views = views
        self.jit = jit
        self.train_mode = True
        self._vjp: Callable | None = None

    def training(self) -> CellClone:
        self.train_mode = True
        return self

    def evaluate(self) -> CellClone:
        self.train_mode = False
        return self

    @property
    def is_stale(self) -> bool:
        return any(v.arena.retired for v in self.views.values())

    def _check_live(self) -> None:
        if self.is_stale:
            raise StaleCloneError(
                "Clone references a parameter buffer that was re-flattened; rebuild the clones"
            )

    def _apply(self, params, x, states, key, inference):
        if self.jit:
            return apply_core(self.core, params, x, states, key, inference)
        return self.core(params, x, states, key=key, inference=inference)

    def forward(
        self, x: jax.Array, *states: jax.Array, key: jax.Array | None = None
    ) -> tuple[jax.Array, ...]:
        """Run the cell for one timestep.

        :param jax.Array x: Token ids of shape [B].
        :param states: Previous states.
        :param key: Dropout key (training mode only).
        :return tuple: (*new_states, log_probs).
        """
        self._check_live()
        params = {name: v.read() for name, v in self.views.items()}
        inference = not self.train_mode
        if inference:
            self._vjp = None
            return self._apply(params, x, tuple(states), None, True)

        def fn(p, s):
            return self._apply(p, x, s, key, False)

        out, self._vjp = jax.vjp(fn, params, tuple(states))
        return out

    def backward(self, *grad_outputs: jax.Array) -> tuple[jax.Array, ...]:
        """Backprop one timestep.

        Parameter gradients are added into the shared gradient buffer. The
        recorded activations are released afterwards.

        :param grad_outputs: (*d_states, d_log_probs), matching `forward`'s outputs.
        :return tuple: Gradients w.r.t. the previous states.
        """
        if self._vjp is None:
            raise RuntimeError("backward() called without a preceding training-mode forward()")
        self._check_live()
        d_params, d_prev_states = self._vjp(tuple(grad_outputs))
        self._vjp = None
        for name, view in self.views.items():
            view.accumulate_grad(d_params[name])
        return d_prev_states


def clone_many_times(proto: CellGraph, count: int, *, jit: bool = True) -> list[CellClone]:
    """Make `count` clones sharing the prototype's (already flattened) storage.

    :param CellGraph proto: Flattened prototype cell.
    :param int count: Number of clones (sequence length).
    :param bool jit: Run the cell math through `eqx.filter_jit`.
    :raises ValueError: If count < 1 or the prototype was never flattened.
    :raises StaleCloneError: If the prototype's own storage is retired.
    :return list[CellClone]: One clone per timestep.
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    params = proto.parameters()
    arenas = {id(p.arena) for p in params}
    if len(arenas) > 1:
        raise ValueError("Prototype parameters live in separate buffers; flatten() before cloning")
    if any(p.arena.retired for p in params):
        raise StaleCloneError("Prototype parameters point at a retired buffer")
    return [
        CellClone(proto.core, {name: p.view() for name, p in proto.params.items()}, jit=jit)
        for _ in range(count)
    ]


class NLLCriterion:
    """Negative log-likelihood on log-probabilities, averaged over the batch."""

    def forward(self, log_probs: jax.Array, targets: jax.Array) -> jax.Array:
        picked = jnp.take_along_axis(log_probs, targets[:, None], axis=-1)[:, 0]
        return -jnp.mean(picked)

    def backward(self, log_probs: jax.Array, targets: jax.Array) -> jax.Array:
        batch = log_probs.shape[0]
        return jnp.zeros_like(log_probs).at[jnp.arange(batch), targets].set(-1.0 / batch)
