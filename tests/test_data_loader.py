"""Character loader: encoding, batching layout, splits, caching and cursor state."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import numpy as np
import pytest

from charrnn.data import CharSplitLoader
from charrnn.types import ConfigurationError
from tests.helpers.config_factories import write_corpus

# 41 chars: the trailing "x" is cut off by truncation to 5 batches of 2x4, so
# the wrap-around target of the last kept character ("j") is the first one.
CORPUS = "abcdefghij" * 4 + "x"
FRACTIONS = (0.5, 0.25, 0.25)


def _loader(data_dir: Path, fractions=FRACTIONS) -> CharSplitLoader:
    return CharSplitLoader(data_dir, 2, 4, fractions)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return write_corpus(tmp_path / "data", CORPUS)


def test_vocab_is_sorted_and_zero_based(data_dir: Path) -> None:
    loader = _loader(data_dir)
    assert loader.vocab_size == 11
    assert loader.vocab["a"] == 0
    assert loader.vocab["j"] == 9
    assert loader.vocab["x"] == 10


def test_batches_are_row_major_chunks_with_shifted_targets(data_dir: Path) -> None:
    loader = _loader(data_dir)
    assert (loader.ntrain, loader.nval, loader.ntest) == (2, 2, 1)

    x, y = loader.next_batch("train")
    assert x.shape == (2, 4) and y.shape == (2, 4)
    assert x.dtype == np.int32
    # Row 1 starts half way through the truncated corpus (char 20).
    np.testing.assert_array_equal(x, [[0, 1, 2, 3], [0, 1, 2, 3]])
    np.testing.assert_array_equal(y, [[1, 2, 3, 4], [1, 2, 3, 4]])

    # Row b of the next batch continues where row b stopped.
    x2, _ = loader.next_batch("train")
    np.testing.assert_array_equal(x2, [[4, 5, 6, 7], [4, 5, 6, 7]])


def test_last_target_wraps_to_first_character(data_dir: Path) -> None:
    loader = _loader(data_dir)
    x, y = loader.next_batch("test")
    np.testing.assert_array_equal(x[1], [6, 7, 8, 9])
    np.testing.assert_array_equal(y[1], [7, 8, 9, 0])


def test_splits_are_contiguous_and_cursors_wrap(data_dir: Path) -> None:
    loader = _loader(data_dir)

    val_first, _ = loader.next_batch("val")
    # Val starts at batch 2, i.e. chars 8..11 of row 0.
    np.testing.assert_array_equal(val_first[0], [8, 9, 0, 1])

    first, _ = loader.next_batch("train")
    loader.next_batch("train")
    again, _ = loader.next_batch("train")
    np.testing.assert_array_equal(first, again)

    loader.reset_cursor("val")
    np.testing.assert_array_equal(loader.next_batch("val")[0], val_first)


def test_empty_and_unknown_splits(data_dir: Path) -> None:
    loader = _loader(data_dir, (0.8, 0.2, 0.0))
    assert loader.split_size("test") == 0
    with pytest.raises(ValueError, match="empty"):
        loader.next_batch("test")
    with pytest.raises(ValueError, match="Unknown split"):
        loader.next_batch("holdout")


def test_preprocessing_is_cached_and_rebuilt_when_stale(
    data_dir: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="charrnn.data.loader")
    _loader(data_dir)
    assert (data_dir / "vocab.json").exists()
    assert (data_dir / "data.npy").exists()
    assert json.loads((data_dir / "vocab.json").read_text())["x"] == 10
    assert "running preprocessing" in caplog.text

    caplog.clear()
    _loader(data_dir)
    assert "running preprocessing" not in caplog.text

    # A newer corpus invalidates both caches.
    (data_dir / "input.txt").write_text("zyxwvutsrq" * 4, encoding="utf-8")
    future = (data_dir / "data.npy").stat().st_mtime + 10
    os.utime(data_dir / "input.txt", (future, future))
    caplog.clear()
    loader = _loader(data_dir)
    assert "running preprocessing" in caplog.text
    assert loader.vocab_size == 10
    assert loader.vocab["q"] == 0


def test_corpus_smaller_than_one_batch_is_rejected(tmp_path: Path) -> None:
    data_dir = write_corpus(tmp_path / "tiny", "abc")
    with pytest.raises(ConfigurationError, match="fewer than one batch"):
        _loader(data_dir)


def test_no_training_batches_is_rejected(data_dir: Path) -> None:
    with pytest.raises(ConfigurationError, match="No training batches"):
        _loader(data_dir, (0.1, 0.9, 0.0))


def test_missing_corpus(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        _loader(tmp_path / "nowhere")


def test_few_batches_warns(data_dir: Path, caplog: pytest.LogCaptureFixture) -> None:
    _loader(data_dir)
    assert "Only 5 batches" in caplog.text


def test_cursor_state_roundtrip(data_dir: Path) -> None:
    loader = _loader(data_dir)
    loader.next_batch("train")
    loader.next_batch("val")
    state = json.loads(json.dumps(loader.get_state()))
    expected = loader.next_batch("train")

    other = _loader(data_dir)
    other.set_state(state)
    got = other.next_batch("train")
    np.testing.assert_array_equal(got[0], expected[0])
    np.testing.assert_array_equal(got[1], expected[1])
    assert other.get_state()["cursor"]["val"] == 1

    with pytest.raises(ValueError, match="split sizes"):
        other.set_state({"cursor": {}, "sizes": {"train": 9, "val": 0, "test": 0}})
