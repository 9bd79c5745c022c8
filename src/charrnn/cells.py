"""Recurrent cell factory.

A cell is one timestep of a stacked recurrent network:

    (x_t, *states_{t-1}) -> (*states_t, log_probs_t)

It comes in two halves:
- `RecurrentCore` (an equinox Module): the static op graph. Sizes, layer count,
  dropout, and the per-variant gating arithmetic. It owns no arrays.
- `CellGraph`: the core plus named `Parameter`s. This is the prototype that
  gets flattened and then cloned once per timestep.

Keeping params out of the core is what lets every clone run the same graph
against one shared buffer.

Variants:
- lstm: gates i, f, o, g from one combined transform of [x; h_prev]
- gru:  update/reset gates, candidate from reset-gated h_prev
- rnn:  plain tanh recurrence

Parameter layout per layer L (weights are [in, out] so that `x @ W`):
  layer{L}.i2h.weight / .bias    input -> gate pre-activations
  layer{L}.h2h.weight / .bias    hidden -> gate pre-activations
and finally decoder.weight / decoder.bias (hidden -> vocabulary).
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

import equinox as eqx
import jax
import jax.numpy as jnp

from charrnn.config import CELL_KINDS
from charrnn.params import Parameter
from charrnn.types import ConfigurationError

logger = logging.getLogger(__name__)

Params = dict[str, jax.Array]
States = tuple[jax.Array, ...]


class RecurrentCore(eqx.Module):
    """Static graph for one timestep of a stacked recurrent network.

    Subclasses set `kind`, `states_per_layer`, `gate_width` and implement
    `_layer`. The stacking, dropout placement and decoder live here.
    """

    input_size: int = eqx.field(static=True)
    hidden_size: int = eqx.field(static=True)
    num_layers: int = eqx.field(static=True)
    output_size: int = eqx.field(static=True)
    dropout: eqx.nn.Dropout

    kind: ClassVar[str] = ""
    states_per_layer: ClassVar[int] = 1
    # Width of the i2h/h2h outputs, as a multiple of hidden_size.
    gate_width: ClassVar[int] = 1

    @property
    def num_states(self) -> int:
        return self.states_per_layer * self.num_layers

    def param_shapes(self) -> dict[str, tuple[int, ...]]:
        """Named parameter shapes in a stable order."""
        h = self.hidden_size
        g = self.gate_width * h
        shapes: dict[str, tuple[int, ...]] = {}
        for layer in range(self.num_layers):
            in_size = self.input_size if layer == 0 else h
            shapes[f"layer{layer}.i2h.weight"] = (in_size, g)
            shapes[f"layer{layer}.i2h.bias"] = (g,)
            shapes[f"layer{layer}.h2h.weight"] = (h, g)
            shapes[f"layer{layer}.h2h.bias"] = (g,)
        shapes["decoder.weight"] = (h, self.output_size)
        shapes["decoder.bias"] = (self.output_size,)
        return shapes

    def _layer(self, params: Params, layer: int, x: jax.Array, states: States) -> States:
        raise NotImplementedError

    def __call__(
        self,
        params: Params,
        x: jax.Array,
        states: States,
        *,
        key: jax.Array | None = None,
        inference: bool = True,
    ) -> tuple[jax.Array, ...]:
        """Run one timestep.

        :param Params params: Parameter values keyed as in `param_shapes`.
        :param jax.Array x: Token ids of shape [B].
        :param States states: Previous states, `num_states` arrays of [B, H].
        :param key: PRNG key, required when dropout is active.
        :param bool inference: If True, dropout is disabled.
        :return tuple: (*new_states, log_probs) with log_probs of shape [B, V].
        """
        if len(states) != self.num_states:
            raise ValueError(f"{self.kind}: expected {self.num_states} states, got {len(states)}")

        use_dropout = not inference and self.dropout.p > 0
        if use_dropout:
            if key is None:
                raise ValueError(f"{self.kind} cell requires a PRNG key when dropout is active")
            drop_keys = jax.random.split(key, self.num_layers)

        h_in = jax.nn.one_hot(x, self.input_size, dtype=jnp.float32)
        new_states: list[jax.Array] = []
        k = self.states_per_layer
        for layer in range(self.num_layers):
            out = self._layer(params, layer, h_in, tuple(states[layer * k : (layer + 1) * k]))
            new_states.extend(out)
            h_in = out[-1]
            if use_dropout:
                # Applied to every layer's output: between layers and before the decoder.
                h_in = self.dropout(h_in, key=drop_keys[layer], inference=False)

        logits = h_in @ params["decoder.weight"] + params["decoder.bias"]
        return (*new_states, jax.nn.log_softmax(logits, axis=-1))


def _affine(params: Params, name: str, x: jax.Array) -> jax.Array:
    return x @ params[f"{name}.weight"] + params[f"{name}.bias"]


class LSTMCore(RecurrentCore):
    """LSTM: states per layer are (c, h); gates split as i, f, o, g."""

    kind: ClassVar[str] = "lstm"
    states_per_layer: ClassVar[int] = 2
    gate_width: ClassVar[int] = 4

    def _layer(self, params: Params, layer: int, x: jax.Array, states: States) -> States:
        prev_c, prev_h = states
        sums = _affine(params, f"layer{layer}.i2h", x)
        sums = sums + _affine(params, f"layer{layer}.h2h", prev_h)
        i_sum, f_sum, o_sum, g_sum = jnp.split(sums, 4, axis=-1)
        in_gate = jax.nn.sigmoid(i_sum)
        forget_gate = jax.nn.sigmoid(f_sum)
        out_gate = jax.nn.sigmoid(o_sum)
        in_transform = jnp.tanh(g_sum)
        next_c = forget_gate * prev_c + in_gate * in_transform
        next_h = out_gate * jnp.tanh(next_c)
        return next_c, next_h


class GRUCore(RecurrentCore):
    """GRU: one state (h) per layer; blocks are update, reset, candidate."""

    kind: ClassVar[str] = "gru"
    gate_width: ClassVar[int] = 3

    def _layer(self, params: Params, layer: int, x: jax.Array, states: States) -> States:
        (prev_h,) = states
        h = self.hidden_size
        i2h = _affine(params, f"layer{layer}.i2h", x)
        w_hh = params[f"layer{layer}.h2h.weight"]
        b_hh = params[f"layer{layer}.h2h.bias"]

        gates = i2h[:, : 2 * h] + prev_h @ w_hh[:, : 2 * h] + b_hh[: 2 * h]
        update_gate = jax.nn.sigmoid(gates[:, :h])
        reset_gate = jax.nn.sigmoid(gates[:, h:])

        candidate = jnp.tanh(
            i2h[:, 2 * h :] + (reset_gate * prev_h) @ w_hh[:, 2 * h :] + b_hh[2 * h :]
        )
        next_h = update_gate * candidate + (1.0 - update_gate) * prev_h
        return (next_h,)


class RNNCore(RecurrentCore):
    """Vanilla tanh RNN."""

    kind: ClassVar[str] = "rnn"

    def _layer(self, params: Params, layer: int, x: jax.Array, states: States) -> States:
        (prev_h,) = states
        pre = _affine(params, f"layer{layer}.i2h", x) + _affine(params, f"layer{layer}.h2h", prev_h)
        next_h = jnp.tanh(pre)
        return (next_h,)


_CORES: dict[str, type[RecurrentCore]] = {"lstm": LSTMCore, "gru": GRUCore, "rnn": RNNCore}


@eqx.filter_jit
def apply_core(
    core: RecurrentCore,
    params: Params,
    x: jax.Array,
    states: States,
    key: jax.Array | None,
    inference: bool,
) -> tuple[jax.Array, ...]:
    """Compiled `core(...)`. Non-array arguments (`inference`, key=None) are static."""
    return core(params, x, states, key=key, inference=inference)


class CellGraph:
    """Prototype cell: a `RecurrentCore` plus its named parameters.

    The prototype is what gets flattened and cloned. It can also be called
    directly, which is handy for checking a clone against it.
    """

    def __init__(self, core: RecurrentCore, params: dict[str, Parameter]):
        expected = list(core.param_shapes())
        if list(params) != expected:
            raise ValueError(f"Parameter names {list(params)} do not match {expected}")
        self.core = core
        self.params = params

    def __repr__(self) -> str:
        return (
            f"CellGraph(kind={self.kind!r}, input_size={self.core.input_size}, "
            f"hidden_size={self.hidden_size}, num_layers={self.num_layers})"
        )

    @property
    def kind(self) -> str:
        return self.core.kind

    @property
    def hidden_size(self) -> int:
        return self.core.hidden_size

    @property
    def num_layers(self) -> int:
        return self.core.num_layers

    @property
    def num_states(self) -> int:
        return self.core.num_states

    def parameters(self) -> list[Parameter]:
        return list(self.params.values())

    def param_values(self) -> Params:
        return {name: p.value for name, p in self.params.items()}

    def init_state(self, batch_size: int) -> States:
        """Zero states for the start of a sequence."""
        zeros = jnp.zeros((batch_size, self.hidden_size), dtype=jnp.float32)
        return tuple(zeros for _ in range(self.num_states))

    def __call__(
        self, x: jax.Array, *states: jax.Array, key: jax.Array | None = None, inference: bool = True
    ) -> tuple[jax.Array, ...]:
        return self.core(self.param_values(), x, states, key=key, inference=inference)


def build_cell(
    kind: str,
    input_size: int,
    hidden_size: int,
    num_layers: int,
    dropout: float,
    *,
    key: jax.Array,
    output_size: int | None = None,
    init_range: float = 0.05,
) -> CellGraph:
    """Build a prototype cell with uniformly initialised parameters.

    :param str kind: "lstm", "gru" or "rnn".
    :param int input_size: One-hot input width (vocabulary size).
    :param int hidden_size: Hidden units per layer.
    :param int num_layers: Number of stacked layers.
    :param float dropout: Dropout on each layer's output, in [0, 1).
    :param jax.Array key: PRNG key for initialisation.
    :param output_size: Decoder width; defaults to input_size.
    :param float init_range: Parameters start uniform in [-init_range, init_range].
    :raises ConfigurationError: On an unknown kind or invalid sizes.
    :return CellGraph: Prototype cell.
    """
    if kind not in _CORES:
        raise ConfigurationError(f"Unknown cell kind {kind!r}; expected one of {CELL_KINDS}")
    output_size = input_size if output_size is None else output_size
    for name, v in (
        ("input_size", input_size),
        ("hidden_size", hidden_size),
        ("num_layers", num_layers),
        ("output_size", output_size),
    ):
        if v <= 0:
            raise ConfigurationError(f"{name} must be positive, got {v}")
    if not 0.0 <= dropout < 1.0:
        raise ConfigurationError(f"dropout must be in [0, 1), got {dropout}")

    core = _CORES[kind](
        input_size=input_size,
        hidden_size=hidden_size,
        num_layers=num_layers,
        output_size=output_size,
        dropout=eqx.nn.Dropout(dropout),
    )

    shapes = core.param_shapes()
    keys = jax.random.split(key, len(shapes))
    params = {
        name: Parameter(
            name,
            jax.random.uniform(k, shape, dtype=jnp.float32, minval=-init_range, maxval=init_range),
        )
        for k, (name, shape) in zip(keys, shapes.items(), strict=True)
    }
    return CellGraph(core, params)


def init_forget_gate(graph: CellGraph, value: float = 1.0) -> None:
    """Set the forget-gate bias block of every LSTM layer to `value`.

    Writes go through the parameter handles, so after `flatten` they land in
    the shared buffer. A no-op for GRU/RNN cells.
    """
    if graph.kind != "lstm":
        return
    h = graph.hidden_size
    for layer in range(graph.num_layers):
        bias = graph.params[f"layer{layer}.i2h.bias"]
        # Gates are ordered i, f, o, g: f is the second block.
        bias.value = bias.value.at[h : 2 * h].set(value)
        logger.info("setting forget gate biases to %s in LSTM layer %d", value, layer + 1)


def describe(graph: CellGraph) -> dict[str, Any]:
    """Structural hyperparameters, as stored in checkpoint metadata."""
    return {
        "cell": graph.kind,
        "input_size": graph.core.input_size,
        "hidden_size": graph.hidden_size,
        "num_layers": graph.num_layers,
        "output_size": graph.core.output_size,
        "dropout": float(graph.core.dropout.p),
    }
