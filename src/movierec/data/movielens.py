"""Parsers for the MovieLens 100K files `u.item` (pipe-delimited) and `u.data` (tab-delimited)."""
import csv
import io
import re
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from sklearn.preprocessing import LabelEncoder

from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)

# MovieLens 100K genre flag order
GENRES = [
    "unknown", "Action", "Adventure", "Animation", "Children's", "Comedy", "Crime",
    "Documentary", "Drama", "Fantasy", "Film-Noir", "Horror", "Musical",
    "Mystery", "Romance", "Sci-Fi", "Thriller", "War", "Western",
]
N_GENRES = len(GENRES)
_ITEM_FIELDS = 5 + N_GENRES  # id|title|release|video release|imdb url|g0..g18

_YEAR_RE = re.compile(r"\((\d{4})\)\s*$")


@dataclass
class ItemRecord:
    title: str
    year: int | None
    genre_flags: np.ndarray  # float32 (19,)

    @property
    def genres(self) -> list[str]:
        return [GENRES[g] for g in np.flatnonzero(self.genre_flags)]


@dataclass
class ParsedRatings:
    """Ratings encoded to dense indices.

    `ratings` has columns [user, item, rating]; `user_rated_items` maps a dense
    user to the dense items they rated.
    """
    ratings: pd.DataFrame
    user_encoder: LabelEncoder
    item_encoder: LabelEncoder
    user_rated_items: dict[int, frozenset[int]] = field(default_factory=dict)


def extract_year(title: str) -> int | None:
    """Year from a title like "Toy Story (1995)", if plausible."""
    match = _YEAR_RE.search(title)
    if match:
        year = int(match.group(1))
        if 1900 <= year <= 2100:
            return year
    return None


def _read_table(text: str, sep: str, names: list[str]) -> pd.DataFrame:
    """All fields as raw strings; short rows are padded with NaN, extra fields dropped."""
    if not text.strip():
        return pd.DataFrame({name: pd.Series(dtype=object) for name in names})
    return pd.read_csv(
        io.StringIO(text),
        sep=sep,
        header=None,
        names=names,
        index_col=False,
        dtype=str,
        quoting=csv.QUOTE_NONE,
        engine="python",
        on_bad_lines=lambda fields: fields[:len(names)],
    )


def _to_number(column: pd.Series) -> pd.Series:
    return pd.to_numeric(column.astype(str).str.strip(), errors="coerce").astype(np.float64)


def parse_items(text: str) -> dict[int, ItemRecord]:
    """Parse `u.item` into raw item id -> ItemRecord. Malformed lines are skipped."""
    genre_cols = [f"genre_{g}" for g in range(N_GENRES)]
    cols = ["item_id", "title", "release_date", "video_release_date", "imdb_url"] + genre_cols
    raw = _read_table(text, "|", cols)

    ids = _to_number(raw["item_id"])
    # a row shorter than the full field list leaves the last genre flag empty
    valid = ids.notna() & (ids % 1 == 0) & raw[genre_cols[-1]].notna()
    clean = raw[valid]
    skipped = len(raw) - len(clean)
    if skipped:
        logger.warning(f"Skipped {skipped} malformed line(s) in item metadata")

    flags = (clean[genre_cols].astype(str).apply(lambda col: col.str.strip()) == "1").to_numpy(dtype=np.float32)

    items: dict[int, ItemRecord] = {}
    for raw_id, raw_title, row_flags in zip(ids[valid].astype(np.int64), clean["title"], flags):
        raw_id = int(raw_id)
        raw_title = raw_title.strip() if isinstance(raw_title, str) else ""
        raw_title = raw_title or f"Movie {raw_id}"
        year = extract_year(raw_title)
        title = _YEAR_RE.sub("", raw_title).strip() or raw_title
        items[raw_id] = ItemRecord(title=title, year=year, genre_flags=row_flags)
    return items


def parse_ratings(text: str, known_item_ids) -> ParsedRatings:
    """Parse `u.data` rows `user<TAB>item<TAB>rating<TAB>timestamp`.

    Rows with missing or non-numeric fields, or pointing at items absent from
    `known_item_ids`, are skipped. Items are encoded over *all* known items so
    that unrated movies still get an index; users over the users that appear.
    """
    known = np.array(sorted(set(int(i) for i in known_item_ids)), dtype=np.int64)
    raw = _read_table(text, "\t", ["user_id", "item_id", "rating", "timestamp"])

    num = pd.DataFrame({col: _to_number(raw[col]) for col in ("user_id", "item_id", "rating")})
    valid = (
        num.notna().all(axis=1)
        & np.isfinite(num["rating"])
        & (num["user_id"] % 1 == 0)
        & (num["item_id"] % 1 == 0)
        & num["item_id"].isin(known.astype(np.float64))
    )
    df = num[valid].astype({"user_id": np.int64, "item_id": np.int64, "rating": np.float32})

    skipped = len(raw) - len(df)
    if skipped:
        logger.warning(f"Skipped {skipped} malformed or unknown-item rating line(s)")

    user_encoder = LabelEncoder().fit(df.user_id.values)
    item_encoder = LabelEncoder().fit(known)

    df["user"] = np.asarray(user_encoder.transform(df.user_id.values), dtype=np.int64)
    df["item"] = np.asarray(item_encoder.transform(df.item_id.values), dtype=np.int64)

    rated = df.groupby("user")["item"].apply(frozenset).to_dict() if len(df) else {}

    return ParsedRatings(
        ratings=df[["user", "item", "rating"]].reset_index(drop=True),
        user_encoder=user_encoder,
        item_encoder=item_encoder,
        user_rated_items={int(u): items for u, items in rated.items()},
    )


def read_movielens_dir(data_dir: str | Path) -> tuple[str, str]:
    """Read `u.item` and `u.data` from a MovieLens 100K directory."""
    data_dir = Path(data_dir)
    item_path = data_dir / "u.item"
    data_path = data_dir / "u.data"
    for path in (item_path, data_path):
        if not path.exists():
            raise FileNotFoundError(f"Missing MovieLens file: {path}")
    # u.item carries latin-1 titles
    items_text = item_path.read_text(encoding="latin-1")
    ratings_text = data_path.read_text(encoding="latin-1")
    logger.info(f"Read MovieLens files from {data_dir}")
    return items_text, ratings_text
