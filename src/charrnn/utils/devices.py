"""Device selection.

A GPU that was asked for but is not there is not fatal: we warn and fall back
to CPU. The warning names the reason.
"""

from __future__ import annotations

import logging

import jax

logger = logging.getLogger(__name__)


def _platform_devices(platform: str) -> list[jax.Device]:
    try:
        return list(jax.devices(platform))
    except RuntimeError:
        # JAX raises RuntimeError when no backend for the platform is available.
        return []


def select_device(kind: str = "auto", gpu_id: int = 0) -> jax.Device:
    """Pick the device to train on.

    :param str kind: "auto" (GPU if present), "gpu" (warn and fall back to CPU
        if unavailable) or "cpu".
    :param int gpu_id: Index among the visible GPUs.
    :raises ValueError: On an unknown kind.
    :raises RuntimeError: If JAX reports no CPU device at all.
    :return jax.Device: Selected device.
    """
    if kind not in ("auto", "gpu", "cpu"):
        raise ValueError(f"Unknown device kind {kind!r}; expected auto, gpu or cpu")

    if kind in ("auto", "gpu"):
        gpus = _platform_devices("gpu")
        if gpus:
            if gpu_id < len(gpus):
                logger.info("Using GPU %d (%s)", gpu_id, gpus[gpu_id].device_kind)
                return gpus[gpu_id]
            logger.warning(
                "GPU %d requested but only %d visible. Falling back on CPU mode.",
                gpu_id,
                len(gpus),
            )
        elif kind == "gpu":
            logger.warning(
                "GPU requested but no GPU backend is available. "
                "Check that a CUDA-enabled jaxlib is installed. Falling back on CPU mode."
            )

    cpus = _platform_devices("cpu")
    if not cpus:
        raise RuntimeError("JAX reports no CPU device. JAX installation is broken.")
    logger.info("Using CPU")
    return cpus[0]


def device_platform(x: jax.Array) -> str | None:
    """Best-effort platform name ("cpu", "gpu", ...) of an array."""
    devices = getattr(x, "devices", None)
    if devices is None:
        return None
    devs = devices()
    if not devs:
        return None
    return next(iter(devs)).platform
