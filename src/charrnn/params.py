"""One flat parameter buffer, viewed by every module.

JAX arrays are immutable, so "a module's weight is a view into the big vector"
is modelled with handles instead of memory aliasing:

- `ParamArena` owns two 1-D arrays, `values` and `grads`, of identical shape.
- A `Parameter` is (arena, offset, shape). Reading it slices the arena; writing
  it updates the arena. Rebinding a parameter to a new arena is how `flatten`
  moves it into the shared buffer.
- A `ParamView` is a frozen copy of that handle. Clones hold views, so they keep
  pointing at the arena they were built against even if the prototype is
  flattened again; `retired` arenas are how that is detected.

Invariant after `flatten`: every parameter occupies a disjoint slice of one
arena, and a write through the arena is observed by every parameter (and the
other way round). The same holds for gradients.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

import jax
import jax.numpy as jnp
import numpy as np

logger = logging.getLogger(__name__)


class ParamArena:
    """Contiguous parameter values plus a gradient buffer of the same shape."""

    def __init__(self, values: jax.Array):
        values = jnp.ravel(jnp.asarray(values))
        self.values = values
        self.grads = jnp.zeros_like(values)
        self.retired = False

    @property
    def size(self) -> int:
        return int(self.values.size)

    def read(self, offset: int, shape: tuple[int, ...]) -> jax.Array:
        n = int(np.prod(shape, dtype=np.int64))
        return self.values[offset : offset + n].reshape(shape)

    def write(self, offset: int, value: jax.Array) -> None:
        flat = jnp.ravel(jnp.asarray(value, dtype=self.values.dtype))
        self.values = self.values.at[offset : offset + flat.size].set(flat)

    def read_grad(self, offset: int, shape: tuple[int, ...]) -> jax.Array:
        n = int(np.prod(shape, dtype=np.int64))
        return self.grads[offset : offset + n].reshape(shape)

    def add_grad(self, offset: int, grad: jax.Array) -> None:
        """Accumulate (never overwrite) a gradient contribution into a slice."""
        flat = jnp.ravel(jnp.asarray(grad, dtype=self.grads.dtype))
        self.grads = self.grads.at[offset : offset + flat.size].add(flat)

    def zero_grad(self) -> None:
        self.grads = jnp.zeros_like(self.values)


class Parameter:
    """A named trainable tensor stored in a slice of a `ParamArena`.

    A freshly created parameter owns a private single-tensor arena. `flatten`
    rebinds it into a shared one.
    """

    def __init__(self, name: str, value: jax.Array):
        value = jnp.asarray(value)
        self.name = name
        self.shape: tuple[int, ...] = tuple(int(d) for d in value.shape)
        self.arena = ParamArena(value)
        self.offset = 0

    def __repr__(self) -> str:
        return f"Parameter({self.name!r}, shape={self.shape}, offset={self.offset})"

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def value(self) -> jax.Array:
        return self.arena.read(self.offset, self.shape)

    @value.setter
    def value(self, new: jax.Array) -> None:
        new = jnp.asarray(new)
        if tuple(new.shape) != self.shape:
            raise ValueError(f"{self.name}: expected shape {self.shape}, got {tuple(new.shape)}")
        self.arena.write(self.offset, new)

    @property
    def grad(self) -> jax.Array:
        return self.arena.read_grad(self.offset, self.shape)

    def accumulate_grad(self, grad: jax.Array) -> None:
        self.arena.add_grad(self.offset, grad)

    def storage_key(self) -> tuple[int, int]:
        """Identity of the underlying storage slice (not of the values)."""
        return id(self.arena), self.offset

    def rebind(self, arena: ParamArena, offset: int) -> None:
        self.arena = arena
        self.offset = offset

    def view(self) -> ParamView:
        return ParamView(name=self.name, arena=self.arena, offset=self.offset, shape=self.shape)


@dataclass(frozen=True)
class ParamView:
    """Non-owning handle into an arena slice, as held by a time-step clone."""

    name: str
    arena: ParamArena
    offset: int
    shape: tuple[int, ...]

    def read(self) -> jax.Array:
        return self.arena.read(self.offset, self.shape)

    def accumulate_grad(self, grad: jax.Array) -> None:
        self.arena.add_grad(self.offset, grad)


class HasParameters(Protocol):
    """Anything `flatten` can consume."""

    def parameters(self) -> Sequence[Parameter]: ...


def unique_parameters(modules: Iterable[HasParameters]) -> list[Parameter]:
    """Collect parameters in module-then-parameter order, dropping aliases.

    Two parameters alias when they are the same object or are bound to the same
    arena slice. The first occurrence wins, so the order is stable.

    :param modules: Modules exposing `parameters()`.
    :return list[Parameter]: Distinct parameters in deterministic order.
    """
    seen_objects: set[int] = set()
    seen_storage: dict[tuple[int, int], Parameter] = {}
    out: list[Parameter] = []
    for module in modules:
        for p in module.parameters():
            if id(p) in seen_objects:
                continue
            seen_objects.add(id(p))
            key = p.storage_key()
            first = seen_storage.get(key)
            if first is not None:
                if first.shape != p.shape:
                    raise ValueError(
                        f"Parameters {first.name!r} and {p.name!r} share storage but "
                        f"disagree on shape ({first.shape} vs {p.shape})"
                    )
                continue
            seen_storage[key] = p
            out.append(p)
    return out


def flatten(modules: Iterable[HasParameters]) -> ParamArena:
    """Move every parameter of `modules` into one freshly allocated arena.

    Values are copied once per distinct storage slice, in module-then-parameter
    order, and every parameter (including aliases that pointed at the same slice)
    is rebound to its slice of the new arena. Arenas that were replaced are
    marked `retired`, which invalidates clones built against them.

    :param modules: Modules exposing `parameters()`.
    :return ParamArena: The shared arena (`values`, `grads`).
    """
    modules = list(modules)
    params = unique_parameters(modules)

    # Every parameter object, aliases included, grouped by storage slice.
    by_storage: dict[tuple[int, int], list[Parameter]] = {}
    for module in modules:
        for p in module.parameters():
            group = by_storage.setdefault(p.storage_key(), [])
            if all(q is not p for q in group):
                group.append(p)

    old_arenas = {id(p.arena): p.arena for group in by_storage.values() for p in group}

    if params:
        values = jnp.concatenate([jnp.ravel(p.value) for p in params])
    else:
        values = jnp.zeros((0,), dtype=jnp.float32)
    arena = ParamArena(values)

    offset = 0
    for p in params:
        for alias in by_storage[p.storage_key()]:
            alias.rebind(arena, offset)
        offset += p.size

    for old in old_arenas.values():
        old.retired = True

    logger.debug("Flattened %d parameters (%d values)", len(params), arena.size)
    return arena
