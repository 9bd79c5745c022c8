"""Utility tests consolidated by module."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import jax
import jax.numpy as jnp
import pytest

from charrnn.cells import build_cell
from charrnn.config import Config
from charrnn.params import flatten
from charrnn.utils.io import (
    MetricsWriter,
    _ConsoleNoiseFilter,
    add_file_logging,
    create_run_dir,
    remove_file_logging,
    setup_python_logging,
)
from charrnn.utils.tree import param_count, tree_allclose, tree_equal
from tests.helpers.metrics import read_metrics


def test_param_count_matches_flat_buffer() -> None:
    """Parameter count of the cell equals the size of its flat buffer."""
    graph = build_cell("lstm", 10, 6, 2, 0.0, key=jax.random.PRNGKey(0))
    arena = flatten([graph])
    # layer0: 10*24 + 24 + 6*24 + 24, layer1: 6*24 + 24 + 6*24 + 24, decoder: 6*10 + 10
    expected = (240 + 24 + 144 + 24) + (144 + 24 + 144 + 24) + (60 + 10)
    assert param_count(arena.values) == expected
    assert param_count(graph.param_values()) == expected


def test_tree_allclose_checks_structure_shape_and_values() -> None:
    a = {"w": jnp.ones((2, 2)), "n": 3}
    assert tree_allclose(a, {"w": jnp.ones((2, 2)), "n": 3})
    assert tree_allclose(a, {"w": jnp.ones((2, 2)) + 1e-8, "n": 3})
    assert not tree_equal(a, {"w": jnp.ones((2, 2)) + 1e-3, "n": 3})
    assert not tree_allclose(a, {"w": jnp.ones((4,)), "n": 3})
    assert not tree_allclose(a, {"w": jnp.ones((2, 2)), "n": 4})
    assert not tree_allclose(a, {"v": jnp.ones((2, 2)), "n": 3})


def test_metrics_writer_appends_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "sub" / "metrics.jsonl"
    with MetricsWriter(path) as mw:
        mw.write({"step": 1, "loss": 4.2})
    with MetricsWriter(path) as mw:
        mw.write({"step": 2, "loss": float("nan")})

    rows = read_metrics(path)
    assert [r["step"] for r in rows] == [1, 2]
    assert rows[1]["loss"] != rows[1]["loss"]


def _cfg(run_dir: Path | None) -> Config:
    cfg = Config()
    return replace(
        cfg, logging=replace(cfg.logging, run_dir=None if run_dir is None else str(run_dir))
    )


def test_create_run_dir_snapshots_config(tmp_path: Path) -> None:
    config_src = tmp_path / "my.yaml"
    config_src.write_text("train:\n  batch_size: 4\n")
    run_dir = create_run_dir(_cfg(tmp_path / "run"), config_path=config_src)

    resolved = json.loads((run_dir / "config_resolved.json").read_text())
    assert resolved["model"]["cell"] == "lstm"
    assert (run_dir / "config_original.yaml").read_text() == config_src.read_text()

    with pytest.raises(RuntimeError, match="Run dir already exists"):
        create_run_dir(_cfg(run_dir), config_path=config_src)

    again = create_run_dir(_cfg(run_dir), config_path=config_src, allow_existing=True)
    assert again == run_dir
    assert (run_dir / "config_resume.json").exists()


def test_create_run_dir_without_run_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_dir = create_run_dir(_cfg(None), config_path=None)
    assert run_dir.parts[:2] == ("runs", "charrnn")
    assert run_dir.name.endswith("_run")

    with pytest.raises(RuntimeError, match="run_dir is null"):
        create_run_dir(_cfg(None), config_path=None, allow_existing=True)


def test_console_filter_hides_noisy_info() -> None:
    filt = _ConsoleNoiseFilter()

    def record(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "msg", None, None)

    assert not filt.filter(record("orbax.checkpoint", logging.INFO))
    assert not filt.filter(record("jax._src.xla_bridge", logging.INFO))
    assert filt.filter(record("absl", logging.WARNING))
    assert filt.filter(record("charrnn.train", logging.INFO))


def test_file_logging_attach_and_detach(tmp_path: Path) -> None:
    setup_python_logging("INFO", use_rich=False)
    root = logging.getLogger()
    log_path = tmp_path / "train.log"

    add_file_logging(log_path, level="INFO")
    add_file_logging(log_path, level="INFO")
    file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1

    logging.getLogger("charrnn.test").info("hello file")
    remove_file_logging(log_path)
    logging.getLogger("charrnn.test").info("after removal")

    text = log_path.read_text()
    assert "hello file" in text
    assert "after removal" not in text
    assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
