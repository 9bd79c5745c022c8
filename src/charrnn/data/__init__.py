"""Data loading for charrnn.

One plain-text corpus, character vocabulary, fixed-shape [B, T] batches.
The public contract is `CharSplitLoader`: `next_batch(split)`,
`reset_cursor(split)`, `split_size(split)`, `vocab`, and
`get_state`/`set_state` for resume.
"""

from __future__ import annotations

from .loader import SPLITS, CharSplitLoader, text_to_tensor

__all__ = ["SPLITS", "CharSplitLoader", "text_to_tensor"]
