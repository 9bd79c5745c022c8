"""charrnn: character-level recurrent LM training with explicit truncated BPTT.

This package is intentionally small.

The pieces, leaves first:
- cells: one timestep of an LSTM/GRU/RNN stack (params + op graph)
- params: one flat parameter/gradient buffer that every module views into
- unroll: per-timestep clones that share that buffer
- engine: forward/backward through time, clipping, RMSProp update
- train: epochs, lr decay, validation, Orbax checkpoints, divergence aborts
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("charrnn")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
