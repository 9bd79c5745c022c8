"""Training step engine: BPTT gradients, clipping, RMSProp, state carry, divergence."""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from charrnn.cells import build_cell
from charrnn.config import OptimConfig
from charrnn.engine import TrainingEngine, clip_by_global_norm
from charrnn.params import flatten
from charrnn.types import Batch, NumericalDivergence
from charrnn.unroll import NLLCriterion

VOCAB = 4
B = 2
T = 3


def _batch() -> Batch:
    x = jnp.array([[0, 1, 2], [3, 0, 1]], dtype=jnp.int32)
    # Next character is always (x + 1) mod VOCAB.
    return Batch(input_ids=x, labels=(x + 1) % VOCAB)


def _engine(
    kind: str = "lstm",
    *,
    hidden: int = 3,
    layers: int = 1,
    dropout: float = 0.0,
    jit: bool = False,
    **optim: Any,
) -> TrainingEngine:
    graph = build_cell(kind, VOCAB, hidden, layers, dropout, key=jax.random.PRNGKey(0))
    arena = flatten([graph])
    return TrainingEngine(
        graph,
        arena,
        batch_size=B,
        seq_length=T,
        optim=OptimConfig(**optim),
        key=jax.random.PRNGKey(1),
        jit=jit,
    )


def _reference_loss(engine: TrainingEngine, batch: Batch, init_state, keys=None):
    """Sum over timesteps of the NLL, as a function of the flat buffer.

    With `keys`, timestep t runs in training mode with dropout key keys[t].
    """
    graph = engine.proto
    crit = NLLCriterion()
    x = batch.input_ids.T
    y = batch.labels.T

    def loss(flat):
        params = {
            name: flat[p.offset : p.offset + p.size].reshape(p.shape)
            for name, p in graph.params.items()
        }
        states = tuple(init_state)
        total = 0.0
        for t in range(T):
            if keys is None:
                out = graph.core(params, x[t], states)
            else:
                out = graph.core(params, x[t], states, key=keys[t], inference=False)
            states = tuple(out[:-1])
            total = total + crit.forward(out[-1], y[t])
        return total

    return loss


@pytest.mark.parametrize("kind", ["lstm", "gru", "rnn"])
def test_accumulated_gradient_matches_full_unroll(kind: str) -> None:
    engine = _engine(kind, grad_clip=0.0)
    batch = _batch()
    values = jnp.array(engine.arena.values)
    init_state = engine.state

    ref = _reference_loss(engine, batch, init_state)
    ref_total, ref_grad = jax.value_and_grad(ref)(values)

    metrics = engine.step(batch)

    # Reported loss is averaged over time, gradients are the plain sum.
    assert metrics["loss"] == pytest.approx(float(ref_total) / T, rel=1e-5)
    np.testing.assert_allclose(
        np.asarray(engine.arena.grads), np.asarray(ref_grad), rtol=1e-4, atol=1e-7
    )
    assert metrics["grad_norm"] == pytest.approx(
        float(jnp.linalg.norm(ref_grad)), rel=1e-4
    )


def test_state_is_carried_and_gradient_is_truncated() -> None:
    engine = _engine(grad_clip=0.0)
    batch = _batch()

    engine.step(batch)
    carried = engine.state
    assert any(float(jnp.abs(s).sum()) > 0 for s in carried)

    # The second step starts from the carried state, but no gradient flows
    # back into the previous minibatch.
    values = jnp.array(engine.arena.values)
    ref_total, ref_grad = jax.value_and_grad(_reference_loss(engine, batch, carried))(values)
    metrics = engine.step(batch)

    assert metrics["loss"] == pytest.approx(float(ref_total) / T, rel=1e-5)
    np.testing.assert_allclose(
        np.asarray(engine.arena.grads), np.asarray(ref_grad), rtol=1e-4, atol=1e-7
    )

    engine.reset_state()
    assert all(float(jnp.abs(s).sum()) == 0.0 for s in engine.state)


@pytest.mark.parametrize("jit", [False, True])
def test_dropout_masks_are_replayed_in_backward(jit: bool) -> None:
    engine = _engine(hidden=5, layers=2, dropout=0.4, jit=jit, grad_clip=0.0)
    batch = _batch()
    values = jnp.array(engine.arena.values)

    # Same key schedule as the engine: one split per step, then one key per timestep.
    _, step_key = jax.random.split(engine.key)
    keys = jax.random.split(step_key, T)
    ref = _reference_loss(engine, batch, engine.state, keys)
    ref_total, ref_grad = jax.value_and_grad(ref)(values)

    metrics = engine.step(batch)

    assert metrics["loss"] == pytest.approx(float(ref_total) / T, rel=1e-5)
    np.testing.assert_allclose(
        np.asarray(engine.arena.grads), np.asarray(ref_grad), rtol=1e-4, atol=1e-7
    )

    # Without dropout the same weights give a different loss.
    no_drop = _reference_loss(engine, batch, engine.proto.init_state(B))(values)
    assert float(no_drop) != pytest.approx(float(ref_total), rel=1e-6)


def test_single_step_smoke() -> None:
    """4 symbols, hidden 8, T=3, B=2, one LSTM layer: one step trains in place."""
    engine = _engine(hidden=8)
    before = np.asarray(engine.arena.values)

    metrics = engine.step(_batch())

    assert np.isfinite(metrics["loss"])
    after = np.asarray(engine.arena.values)
    assert after.shape == before.shape
    assert np.any(after != before)


def test_first_update_is_rmsprop_with_eps_outside_sqrt() -> None:
    lr, decay, eps = 0.01, 0.9, 1e-2
    engine = _engine(grad_clip=0.0, learning_rate=lr, decay_rate=decay, eps=eps)
    before = np.asarray(engine.arena.values)

    engine.step(_batch())

    g = np.asarray(engine.arena.grads)
    expected = before - lr * g / (np.sqrt((1 - decay) * g**2) + eps)
    np.testing.assert_allclose(np.asarray(engine.arena.values), expected, rtol=1e-4, atol=1e-7)


def test_clip_by_global_norm_scales_uniformly() -> None:
    grads = {"a": jnp.array([3.0, 0.0]), "b": jnp.array([[4.0]])}

    clipped = clip_by_global_norm(grads, 1.0)
    np.testing.assert_allclose(np.asarray(clipped["a"]), [0.6, 0.0], rtol=1e-6)
    np.testing.assert_allclose(np.asarray(clipped["b"]), [[0.8]], rtol=1e-6)

    untouched = clip_by_global_norm(grads, 10.0)
    np.testing.assert_allclose(np.asarray(untouched["a"]), [3.0, 0.0])
    assert clip_by_global_norm(grads, None) is grads
    assert clip_by_global_norm(grads, 0.0) is grads


@pytest.mark.filterwarnings("error:.*global_norm:DeprecationWarning")
def test_engine_clips_before_the_update() -> None:
    engine = _engine(grad_clip=1e-3)
    metrics = engine.step(_batch())

    assert metrics["grad_norm"] > 1e-3
    clipped_norm = float(jnp.linalg.norm(engine.arena.grads))
    assert clipped_norm == pytest.approx(1e-3, rel=1e-4)
    param_norm = float(jnp.linalg.norm(engine.arena.values))
    assert metrics["grad_param_ratio"] == pytest.approx(clipped_norm / param_norm, rel=1e-4)


def test_learning_rate_is_mutable_between_steps() -> None:
    engine = _engine(learning_rate=0.002)
    assert engine.learning_rate == pytest.approx(0.002)

    engine.learning_rate = engine.learning_rate * 0.5
    metrics = engine.step(_batch())
    assert metrics["lr"] == pytest.approx(0.001)
    assert engine.learning_rate == pytest.approx(0.001)


def test_nan_parameters_abort_without_update() -> None:
    engine = _engine()
    engine.arena.values = jnp.full_like(engine.arena.values, jnp.nan)
    before = np.asarray(engine.arena.values)
    count_before = int(engine.opt_state.count)

    with pytest.raises(NumericalDivergence, match="Non-finite loss") as excinfo:
        engine.step(_batch())

    assert excinfo.value.reason == "numerical_divergence"
    np.testing.assert_array_equal(np.asarray(engine.arena.values), before)
    assert int(engine.opt_state.count) == count_before
    assert engine.step_count == 0


def test_batch_shape_is_checked() -> None:
    engine = _engine()
    bad = Batch(
        input_ids=jnp.zeros((B, T + 1), dtype=jnp.int32),
        labels=jnp.zeros((B, T + 1), dtype=jnp.int32),
    )
    with pytest.raises(ValueError, match="Expected input_ids/labels"):
        engine.step(bad)


class _FixedLoader:
    """Loader stub serving the same batch for every split except empty ones."""

    def __init__(self, batch: Batch, sizes: dict[str, int]) -> None:
        self.batch = batch
        self.sizes = sizes
        self.resets: list[str] = []

    def split_size(self, split: str) -> int:
        return self.sizes[split]

    def reset_cursor(self, split: str) -> None:
        self.resets.append(split)

    def next_batch(self, split: str):
        return np.asarray(self.batch.input_ids), np.asarray(self.batch.labels)


def test_evaluate_leaves_training_state_alone() -> None:
    engine = _engine()
    batch = _batch()
    engine.step(batch)
    carried = engine.state
    values = np.asarray(engine.arena.values)

    loader = _FixedLoader(batch, {"val": 3, "test": 0})
    val = engine.evaluate(loader, "val")

    assert val is not None and np.isfinite(val)
    assert loader.resets == ["val"]
    assert engine.state is carried
    np.testing.assert_array_equal(np.asarray(engine.arena.values), values)
    assert all(c.train_mode for c in engine.clones)

    assert engine.evaluate(loader, "test") is None


def test_evaluate_respects_max_batches() -> None:
    engine = _engine()
    batch = _batch()
    loader = _FixedLoader(batch, {"val": 5})

    one = engine.evaluate(loader, "val", max_batches=1)
    # A single batch from zero state is exactly the reference loss / T.
    ref = _reference_loss(engine, batch, engine.proto.init_state(B))
    assert one == pytest.approx(float(ref(engine.arena.values)) / T, rel=1e-5)


def test_end_to_end_loss_decreases_with_jit() -> None:
    engine = _engine(hidden=8, jit=True, learning_rate=3e-2)
    batch = _batch()

    losses = []
    for _ in range(100):
        engine.reset_state()
        losses.append(engine.step(batch)["loss"])

    assert losses[0] == pytest.approx(np.log(VOCAB), abs=0.1)
    assert losses[-1] < losses[0] - 0.3
    assert engine.step_count == 100
