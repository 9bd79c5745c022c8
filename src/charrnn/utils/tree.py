"""Pytree helper functions.

The small utilities every JAX training repo ends up rewriting:
- parameter counts
- tree closeness checks

Keep it minimal: this is not a generic library.
"""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp


def param_count(params: Any) -> int:
    """Count scalar parameters in a pytree.

    :param Any params: Parameter pytree (or a flat buffer).
    :return int: Total number of scalars.
    """
    return sum(int(x.size) for x in jax.tree_util.tree_leaves(params) if hasattr(x, "size"))


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """Tree-wise allclose; structure, shapes and dtypes must match too.

    :param Any a: First pytree.
    :param Any b: Second pytree.
    :param float rtol: Relative tolerance.
    :param float atol: Absolute tolerance.
    :return bool: True if every leaf is close.
    """
    la, ta = jax.tree_util.tree_flatten(a)
    lb, tb = jax.tree_util.tree_flatten(b)
    if ta != tb:
        return False
    for xa, xb in zip(la, lb, strict=True):
        if hasattr(xa, "shape") and hasattr(xb, "shape"):
            if xa.shape != xb.shape or xa.dtype != xb.dtype:
                return False
            if not jnp.allclose(xa, xb, rtol=rtol, atol=atol):
                return False
        elif xa != xb:
            return False
    return True


def tree_equal(a: Any, b: Any) -> bool:
    """Tree-wise exact equality."""
    return tree_allclose(a, b, rtol=0.0, atol=0.0)
