"""In-memory rating store: dense triples, per-user rated sets and aggregates."""
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from movierec.data.movielens import (
    GENRES,
    N_GENRES,
    parse_items,
    parse_ratings,
    read_movielens_dir,
)
from movierec.utils.errors import UnknownItemError, UnknownUserError
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Movie:
    raw_id: int
    index: int
    title: str
    year: int | None
    genre_flags: np.ndarray  # float32 (19,)

    @property
    def genres(self) -> list[str]:
        return [GENRES[g] for g in np.flatnonzero(self.genre_flags)]


@dataclass(frozen=True)
class GlobalStats:
    user_count: int
    item_count: int
    rating_count: int
    mean_rating: float


class RatingStore:
    """Holds the dense rating triples and everything derived from them once.

    Triples are stored column-wise (`users`, `items`, `ratings`) so that a
    split or a batch is just an index array into the three columns.
    """

    def __init__(
        self,
        users: np.ndarray,
        items: np.ndarray,
        ratings: np.ndarray,
        *,
        movies: list[Movie],
        raw_user_ids: np.ndarray,
    ) -> None:
        self.users = np.asarray(users, dtype=np.int64)
        self.items = np.asarray(items, dtype=np.int64)
        self.ratings = np.asarray(ratings, dtype=np.float32)
        if not (len(self.users) == len(self.items) == len(self.ratings)):
            raise ValueError("users, items and ratings must have the same length")

        self.movies = movies
        self.raw_user_ids = np.asarray(raw_user_ids, dtype=np.int64)
        self.num_users = len(self.raw_user_ids)
        self.num_items = len(movies)

        if len(self.users) and (self.users.min() < 0 or self.users.max() >= self.num_users):
            raise ValueError("user index out of range")
        if len(self.items) and (self.items.min() < 0 or self.items.max() >= self.num_items):
            raise ValueError("item index out of range")

        self._user_index_by_raw_id = {int(raw): u for u, raw in enumerate(self.raw_user_ids)}
        self._item_index_by_raw_id = {m.raw_id: m.index for m in movies}

        # Rated sets are built from *all* triples, not just a training split
        rated: dict[int, set[int]] = {}
        for u, i in zip(self.users.tolist(), self.items.tolist()):
            rated.setdefault(u, set()).add(i)
        self.user_rated_items: dict[int, frozenset[int]] = {u: frozenset(s) for u, s in rated.items()}

        self.item_rating_sum = np.bincount(self.items, weights=self.ratings, minlength=self.num_items)
        self.item_rating_count = np.bincount(self.items, minlength=self.num_items)

        mean = float(self.ratings.astype(np.float64).mean()) if len(self.ratings) else 0.0
        self.stats = GlobalStats(
            user_count=self.num_users,
            item_count=self.num_items,
            rating_count=len(self.ratings),
            mean_rating=mean,
        )

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_movielens_text(cls, items_text: str, ratings_text: str) -> "RatingStore":
        item_records = parse_items(items_text)
        parsed = parse_ratings(ratings_text, item_records.keys())

        movies = [
            Movie(
                raw_id=int(raw_id),
                index=index,
                title=item_records[int(raw_id)].title,
                year=item_records[int(raw_id)].year,
                genre_flags=item_records[int(raw_id)].genre_flags,
            )
            for index, raw_id in enumerate(parsed.item_encoder.classes_)
        ]
        df = parsed.ratings
        store = cls(
            df.user.values,
            df.item.values,
            df.rating.values,
            movies=movies,
            raw_user_ids=parsed.user_encoder.classes_,
        )
        logger.info(
            f"Loaded {store.stats.rating_count:,} ratings | users: {store.num_users:,} | "
            f"items: {store.num_items:,} | mean rating: {store.stats.mean_rating:.3f}"
        )
        return store

    @classmethod
    def from_directory(cls, data_dir: str | Path) -> "RatingStore":
        return cls.from_movielens_text(*read_movielens_dir(data_dir))

    @classmethod
    def from_triples(
        cls,
        users,
        items,
        ratings,
        *,
        num_users: int | None = None,
        num_items: int | None = None,
        genre_flags: np.ndarray | None = None,
    ) -> "RatingStore":
        """Build a store straight from dense triples; raw ids equal dense indices."""
        users = np.asarray(users, dtype=np.int64)
        items = np.asarray(items, dtype=np.int64)
        num_users = num_users if num_users is not None else (int(users.max()) + 1 if len(users) else 0)
        num_items = num_items if num_items is not None else (int(items.max()) + 1 if len(items) else 0)
        if genre_flags is None:
            genre_flags = np.zeros((num_items, N_GENRES), dtype=np.float32)
        movies = [
            Movie(raw_id=i, index=i, title=f"Movie {i}", year=None,
                  genre_flags=np.asarray(genre_flags[i], dtype=np.float32))
            for i in range(num_items)
        ]
        return cls(users, items, ratings, movies=movies, raw_user_ids=np.arange(num_users))

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.ratings)

    def user_index(self, raw_user_id) -> int:
        try:
            return self._user_index_by_raw_id[int(raw_user_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownUserError(raw_user_id) from None

    def item_index(self, raw_item_id) -> int:
        try:
            return self._item_index_by_raw_id[int(raw_item_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownItemError(raw_item_id) from None

    def raw_user_id(self, user: int) -> int:
        if not 0 <= user < self.num_users:
            raise UnknownUserError(user)
        return int(self.raw_user_ids[user])

    def rated_items(self, user: int) -> frozenset[int]:
        return self.user_rated_items.get(user, frozenset())

    def genre_matrix(self) -> np.ndarray:
        """Raw 0/1 genre flags, shape (num_items, 19)."""
        if not self.movies:
            return np.zeros((0, N_GENRES), dtype=np.float32)
        return np.stack([m.genre_flags for m in self.movies]).astype(np.float32)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"user": self.users, "item": self.items, "rating": self.ratings})
