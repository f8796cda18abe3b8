import numpy as np
import pytest

from movierec.data.movielens import GENRES, N_GENRES
from movierec.data.store import RatingStore
from movierec.engine.baselines import (
    content_recommendations,
    genre_similarity,
    historical_top,
    pick_user,
    similar_movies,
)
from movierec.utils.errors import UnknownItemError


def _flags(*names):
    row = np.zeros(N_GENRES, dtype=np.float32)
    for name in names:
        row[GENRES.index(name)] = 1.0
    return row


@pytest.fixture
def genre_store():
    flags = np.stack([
        _flags("Action", "Thriller"),           # 0
        _flags("Action", "Thriller"),           # 1
        _flags("Action"),                       # 2
        _flags("Comedy", "Romance"),            # 3
        _flags("Drama"),                        # 4
    ])
    users = [0, 0, 1, 1, 1, 2]
    items = [0, 3, 0, 1, 4, 2]
    ratings = [5, 2, 4, 5, 3, 1]
    return RatingStore.from_triples(users, items, ratings, num_users=3, num_items=5, genre_flags=flags)


def test_genre_similarity_metrics():
    a, b = {"Action", "Thriller"}, {"Action"}
    assert genre_similarity(a, b, "cosine") == pytest.approx(1 / np.sqrt(2))
    assert genre_similarity(a, b, "jaccard") == pytest.approx(0.5)
    assert genre_similarity(a, set()) == 0.0
    with pytest.raises(ValueError):
        genre_similarity(a, b, "euclid")


def test_similar_movies_orders_by_score_then_title(genre_store):
    similar = similar_movies(genre_store, 0, k=2)
    assert [m.index for m, _ in similar] == [1, 2]
    assert similar[0][1] == pytest.approx(1.0)


def test_similar_movies_drops_zero_matches(genre_store):
    assert similar_movies(genre_store, 4, k=3) == []


def test_similar_movies_title_tie_break():
    flags = np.stack([_flags("Drama")] * 3)
    store = RatingStore.from_triples([0], [0], [4.0], num_items=3, genre_flags=flags)
    # titles are "Movie 0", "Movie 1", "Movie 2"; equal scores sort alphabetically
    assert [m.title for m, _ in similar_movies(store, 2, k=2)] == ["Movie 0", "Movie 1"]


def test_similar_movies_unknown_item(genre_store):
    with pytest.raises(UnknownItemError):
        similar_movies(genre_store, 42)


def test_historical_top_orders_by_mean_then_count():
    store = RatingStore.from_triples(
        [0, 1, 2, 0, 1, 0, 1, 2],
        [0, 0, 0, 1, 1, 2, 2, 2],
        [4, 4, 4, 5, 3, 3, 5, 4],
        num_items=4,
    )
    top = historical_top(store, k=10, min_ratings=2)
    assert top["item"].tolist() == [0, 2, 1]          # 4.0 (3 ratings), 4.0 (3), 4.0 (2)
    assert top["mean_rating"].tolist() == pytest.approx([4.0, 4.0, 4.0])

    assert historical_top(store, k=10, min_ratings=3)["item"].tolist() == [0, 2]
    assert historical_top(store, k=1, min_ratings=2)["item"].tolist() == [0]


def test_content_recommendations_exclude_seen_and_non_matching(genre_store):
    user_genres = genre_store.genre_matrix()[[0, 1, 2]]          # user 0 likes Action/Thriller
    recs = content_recommendations(genre_store, user_genres, 0, k=10)
    assert [r.item_index for r in recs] == [1, 2]
    assert all(r.score > 0 for r in recs)
    assert recs[0].score == pytest.approx(1.0, abs=1e-5)


def test_pick_user(genre_store):
    assert pick_user(genre_store, min_rated=3) == 1
    assert pick_user(genre_store, min_rated=10) == 0
