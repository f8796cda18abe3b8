"""Non-learned baselines: popularity, genre content matching and item-to-item genre similarity."""
import math
from typing import Literal

import numpy as np
import pandas as pd

from movierec.data.features import build_item_genre_matrix, l2_normalize_rows
from movierec.data.store import Movie, RatingStore
from movierec.engine.retrieval import Recommendation
from movierec.utils.errors import DataNotLoadedError, UnknownUserError


def historical_top(store: RatingStore, k: int = 10, *, min_ratings: int = 50) -> pd.DataFrame:
    """Best-rated movies with at least `min_ratings` ratings, by mean rating then count."""
    df = pd.DataFrame({
        "item": np.arange(store.num_items),
        "raw_item_id": [m.raw_id for m in store.movies],
        "title": [m.title for m in store.movies],
        "year": pd.array([m.year for m in store.movies], dtype="Int64"),
        "count": store.item_rating_count,
    })
    df = df[df["count"] >= min_ratings].copy()
    df["mean_rating"] = store.item_rating_sum[df["item"].values] / df["count"].values
    df = df.sort_values(["mean_rating", "count"], ascending=[False, False], kind="stable")
    return df.head(k).reset_index(drop=True)


def content_recommendations(
    store: RatingStore,
    user_genres: np.ndarray,
    user: int,
    k: int = 10,
) -> list[Recommendation]:
    """Cosine of the user's genre profile against every unrated item's genres.

    Only strictly positive matches are returned; equal scores keep the lower
    item index first.
    """
    if not 0 <= user < store.num_users:
        raise UnknownUserError(user)

    item_genres = build_item_genre_matrix(store)
    profile = l2_normalize_rows(np.asarray(user_genres, dtype=np.float32)[user:user + 1])[0]
    scores = item_genres @ profile

    seen = store.rated_items(user)
    order = np.argsort(-scores, kind="stable")
    picked = [int(i) for i in order if scores[i] > 0 and int(i) not in seen][:k]

    return [
        Recommendation(
            rank=rank,
            item_index=i,
            raw_item_id=store.movies[i].raw_id,
            title=store.movies[i].title,
            year=store.movies[i].year,
            genres=store.movies[i].genres,
            score=float(scores[i]),
        )
        for rank, i in enumerate(picked, start=1)
    ]


def genre_similarity(a: set[str], b: set[str], metric: Literal["cosine", "jaccard"] = "cosine") -> float:
    """Similarity of two genre sets.

    cosine:  |A & B| / (sqrt|A| * sqrt|B|)
    jaccard: |A & B| / |A | B|
    """
    if not a or not b:
        return 0.0
    overlap = len(a & b)
    if metric == "cosine":
        return overlap / (math.sqrt(len(a)) * math.sqrt(len(b)))
    if metric == "jaccard":
        return overlap / len(a | b)
    raise ValueError(f"Unknown similarity metric: {metric}")


def similar_movies(
    store: RatingStore,
    raw_item_id,
    k: int = 2,
    *,
    metric: Literal["cosine", "jaccard"] = "cosine",
) -> list[tuple[Movie, float]]:
    """Movies sharing the most genres with `raw_item_id`; ties broken by title."""
    liked = store.movies[store.item_index(raw_item_id)]
    liked_genres = set(liked.genres)

    scored = [
        (movie, genre_similarity(liked_genres, set(movie.genres), metric))
        for movie in store.movies
        if movie.index != liked.index
    ]
    scored.sort(key=lambda pair: (-pair[1], pair[0].title))
    return [(movie, score) for movie, score in scored[:k] if score > 0]


def pick_user(store: RatingStore, min_rated: int = 5):
    """Raw id of the first user with at least `min_rated` rated movies (else the first user)."""
    if store.num_users == 0:
        raise DataNotLoadedError()
    for user in range(store.num_users):
        if len(store.rated_items(user)) >= min_rated:
            return store.raw_user_id(user)
    return store.raw_user_id(0)
