"""Finite metric checks should catch NaNs/Infs before an update."""

from __future__ import annotations

import pytest

from charrnn.engine import _check_finite_metrics
from charrnn.types import NumericalDivergence, TrainingAborted


def test_finite_check_rejects_nan_loss():
    with pytest.raises(NumericalDivergence, match="loss"):
        _check_finite_metrics({"loss": float("nan"), "grad_norm": 1.0}, step=3)


def test_finite_check_rejects_inf_grad_norm():
    with pytest.raises(RuntimeError, match="grad_norm") as excinfo:
        _check_finite_metrics({"loss": 1.0, "grad_norm": float("inf")}, step=3)
    assert isinstance(excinfo.value, TrainingAborted)
    assert excinfo.value.step == 3


def test_finite_check_accepts_finite_metrics():
    _check_finite_metrics({"loss": 1.2, "grad_norm": 0.5, "lr": 2e-3}, step=0)
