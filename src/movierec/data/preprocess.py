from dataclasses import dataclass

import numpy as np

from movierec.data.store import RatingStore
from movierec.utils.errors import EmptySplitError
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Split:
    """Disjoint index arrays into a triple (or pair) array."""
    train_idx: np.ndarray
    val_idx: np.ndarray

    def __len__(self) -> int:
        return len(self.train_idx) + len(self.val_idx)


@dataclass(frozen=True)
class PositivePairs:
    users: np.ndarray
    items: np.ndarray
    threshold: float

    def __len__(self) -> int:
        return len(self.users)


def train_val_split(
    n: int,
    train_frac: float = 0.9,
    *,
    rng: np.random.Generator | None = None,
) -> Split:
    """Shuffle ``[0, n)`` and cut it at ``floor(n * train_frac)``.

    Raises
    ------
    EmptySplitError
        When either side of the split would be empty; training must not start
        on a degenerate partition.
    """
    if not 0.0 < train_frac < 1.0:
        raise ValueError(f"train_frac must lie in (0, 1), got {train_frac}")
    rng = rng or np.random.default_rng()

    permutation = rng.permutation(n).astype(np.int64)  # Fisher-Yates under the hood
    n_train = int(np.floor(n * train_frac))
    split = Split(train_idx=permutation[:n_train], val_idx=permutation[n_train:])

    if len(split.train_idx) == 0 or len(split.val_idx) == 0:
        raise EmptySplitError(len(split.train_idx), len(split.val_idx))
    return split


def build_positive_pairs(
    store: RatingStore,
    *,
    threshold: float = 4.0,
    relaxed_threshold: float = 3.0,
    min_pairs: int = 1000,
) -> PositivePairs:
    """Select (user, item) pairs rated at or above `threshold`.

    Sparse data safeguard: when fewer than `min_pairs` positives survive, the
    threshold drops to `relaxed_threshold` once.
    """
    mask = store.ratings >= threshold
    used = threshold
    if mask.sum() < min_pairs and relaxed_threshold < threshold:
        relaxed = store.ratings >= relaxed_threshold
        logger.warning(
            f"Only {int(mask.sum())} positives at rating >= {threshold}; "
            f"relaxing threshold to {relaxed_threshold} ({int(relaxed.sum())} pairs)"
        )
        mask, used = relaxed, relaxed_threshold

    return PositivePairs(users=store.users[mask], items=store.items[mask], threshold=used)
