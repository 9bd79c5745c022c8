"""Character corpus -> fixed-shape (x, y) minibatches split into train/val/test.

Preprocessing (once, then cached next to the corpus):
- vocabulary = sorted set of characters, ids 0..V-1
- the corpus encoded as one int array

Batching:
- truncate to a multiple of batch_size * seq_length
- y is x shifted left by one; the last target wraps to the first character
- reshape to [B, -1] and cut along time into [B, T] chunks, so row b of
  batch k+1 continues exactly where row b of batch k stopped (this is what
  makes carrying state across batches meaningful)
- the first `ntrain` chunks are train, then `nval` val, then `ntest` test
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any

import numpy as np

from charrnn.types import ConfigurationError

logger = logging.getLogger(__name__)

SPLITS = ("train", "val", "test")
VOCAB_FILE = "vocab.json"
TENSOR_FILE = "data.npy"
_MIN_BATCHES_WARNING = 50


def _stale(cache: Path, source: Path) -> bool:
    return not cache.exists() or cache.stat().st_mtime < source.stat().st_mtime


def text_to_tensor(input_path: Path, vocab_path: Path, tensor_path: Path) -> None:
    """Build the vocabulary and encoded corpus and write both caches.

    :param Path input_path: Raw text corpus.
    :param Path vocab_path: Where to write the char -> id mapping (JSON).
    :param Path tensor_path: Where to write the encoded corpus (.npy).
    """
    logger.info("loading text file %s", input_path)
    text = input_path.read_text(encoding="utf-8")
    chars = sorted(set(text))
    vocab = {c: i for i, c in enumerate(chars)}
    dtype = np.uint8 if len(vocab) <= 256 else np.int32
    data = np.fromiter((vocab[c] for c in text), dtype=dtype, count=len(text))

    logger.info("saving %s", vocab_path)
    vocab_path.write_text(json.dumps(vocab, ensure_ascii=False))
    logger.info("saving %s", tensor_path)
    np.save(tensor_path, data)


class CharSplitLoader:
    """Cycling minibatch source over a character corpus.

    :param data_dir: Directory containing the corpus file.
    :param int batch_size: Rows per batch (B).
    :param int seq_length: Timesteps per batch (T).
    :param split_fractions: (train, val, test) fractions.
    :param str input_file: Corpus file name inside data_dir.
    :raises FileNotFoundError: If the corpus is missing.
    :raises ConfigurationError: If the corpus cannot fill a single batch.
    """

    def __init__(
        self,
        data_dir: str | Path,
        batch_size: int,
        seq_length: int,
        split_fractions: tuple[float, float, float],
        *,
        input_file: str = "input.txt",
    ):
        data_dir = Path(data_dir)
        input_path = data_dir / input_file
        vocab_path = data_dir / VOCAB_FILE
        tensor_path = data_dir / TENSOR_FILE
        if not input_path.exists():
            raise FileNotFoundError(f"Corpus not found: {input_path}")

        if _stale(vocab_path, input_path) or _stale(tensor_path, input_path):
            logger.info(
                "vocab.json or data.npy missing or older than %s, running preprocessing", input_file
            )
            text_to_tensor(input_path, vocab_path, tensor_path)

        logger.info("loading data files...")
        data = np.load(tensor_path).astype(np.int32)
        self.vocab: dict[str, int] = json.loads(vocab_path.read_text(encoding="utf-8"))
        self.batch_size = batch_size
        self.seq_length = seq_length

        chunk = batch_size * seq_length
        usable = (len(data) // chunk) * chunk
        if usable == 0:
            raise ConfigurationError(
                f"Corpus has {len(data)} characters, fewer than one batch "
                f"(batch_size*seq_length = {chunk}). Use a smaller batch_size or seq_length."
            )
        data = data[:usable]

        ydata = np.empty_like(data)
        ydata[:-1] = data[1:]
        ydata[-1] = data[0]

        # [B, N] then cut along time into [B, T] chunks.
        self.x_batches = np.split(data.reshape(batch_size, -1), usable // chunk, axis=1)
        self.y_batches = np.split(ydata.reshape(batch_size, -1), usable // chunk, axis=1)
        self.nbatches = len(self.x_batches)
        if self.nbatches < _MIN_BATCHES_WARNING:
            logger.warning(
                "Only %d batches in total; consider a smaller batch_size or seq_length",
                self.nbatches,
            )

        train_frac, _val_frac, test_frac = split_fractions
        self.ntrain = math.floor(self.nbatches * train_frac)
        self.ntest = math.floor(self.nbatches * test_frac)
        self.nval = self.nbatches - self.ntrain - self.ntest
        if self.ntrain == 0:
            raise ConfigurationError(
                f"No training batches: {self.nbatches} batches with train_frac={train_frac}"
            )

        self._sizes = {"train": self.ntrain, "val": self.nval, "test": self.ntest}
        self._offsets = {"train": 0, "val": self.ntrain, "test": self.ntrain + self.nval}
        self._cursor = dict.fromkeys(SPLITS, 0)
        logger.info(
            "data load done. Number of batches in train: %d, val: %d, test: %d",
            self.ntrain,
            self.nval,
            self.ntest,
        )

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    def _check_split(self, split: str) -> None:
        if split not in SPLITS:
            raise ValueError(f"Unknown split {split!r}; expected one of {SPLITS}")

    def split_size(self, split: str) -> int:
        self._check_split(split)
        return self._sizes[split]

    def reset_cursor(self, split: str) -> None:
        self._check_split(split)
        self._cursor[split] = 0

    def next_batch(self, split: str) -> tuple[np.ndarray, np.ndarray]:
        """Return the next (x, y) pair of shape [B, T] and advance, wrapping around.

        :param str split: "train", "val" or "test".
        :raises ValueError: If the split is unknown or empty.
        :return tuple[np.ndarray, np.ndarray]: Inputs and targets (int32).
        """
        self._check_split(split)
        size = self._sizes[split]
        if size == 0:
            raise ValueError(f"Split {split!r} is empty")
        ix = self._offsets[split] + self._cursor[split]
        self._cursor[split] = (self._cursor[split] + 1) % size
        return self.x_batches[ix].copy(), self.y_batches[ix].copy()

    def get_state(self) -> dict[str, Any]:
        """JSON-serialisable cursor state for checkpoints."""
        return {"cursor": dict(self._cursor), "sizes": dict(self._sizes)}

    def set_state(self, state: dict[str, Any]) -> None:
        """Restore cursors written by `get_state`.

        :raises ValueError: If the split sizes changed since the state was saved.
        """
        sizes = state.get("sizes")
        if sizes is not None and {k: int(v) for k, v in sizes.items()} != self._sizes:
            raise ValueError(
                f"Data state was saved with split sizes {sizes}, current sizes are {self._sizes}"
            )
        for split, pos in state.get("cursor", {}).items():
            self._check_split(split)
            size = self._sizes[split]
            self._cursor[split] = int(pos) % size if size else 0
