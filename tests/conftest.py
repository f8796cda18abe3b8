import numpy as np
import pytest

from movierec.data.movielens import N_GENRES
from movierec.data.store import RatingStore
from movierec.utils.config import TrainingConfig


def _item_line(raw_id: int, title: str, genres: list[int]) -> str:
    flags = ["1" if g in genres else "0" for g in range(N_GENRES)]
    return "|".join([str(raw_id), title, "01-Jan-1995", "", "http://example.org"] + flags)


@pytest.fixture
def items_text():
    return "\n".join([
        _item_line(1, "Toy Story (1995)", [3, 4, 5]),
        _item_line(2, "GoldenEye (1995)", [1, 2, 16]),
        _item_line(5, "Copycat (1995)", [6, 8, 16]),
        _item_line(7, "Twelve Monkeys (1995)", [15, 8]),
        "9|Broken line|only|four",
        "x" + _item_line(10, "Bad Id (1990)", [8]),
    ])


@pytest.fixture
def ratings_text():
    return "\n".join([
        "196\t1\t5\t881250949",
        "196\t2\t3\t881250949",
        "22\t1\t4\t881250949",
        "22\t5\t2\t881250949",
        "244\t2\t5\t881250949",
        "300\t5\t1\t881250949",
        "300\t999\t4\t881250949",   # unknown item
        "301\tabc\t4\t881250949",   # not a number
        "302\t1",                    # too short
    ])


@pytest.fixture
def tiny_store():
    """4 users, 3 items, 6 ratings with mean 20/6."""
    users = [0, 0, 1, 1, 2, 3]
    items = [0, 1, 0, 2, 1, 2]
    ratings = [5, 3, 4, 2, 5, 1]
    return RatingStore.from_triples(users, items, ratings)


def make_synthetic_store(
    num_users: int = 60,
    num_items: int = 40,
    density: float = 0.5,
    seed: int = 0,
) -> RatingStore:
    """Ratings driven by a rank-2 structure plus biases, with random genre flags."""
    rng = np.random.default_rng(seed)
    user_f = rng.normal(size=(num_users, 2))
    item_f = rng.normal(size=(num_items, 2))
    user_b = rng.normal(scale=0.5, size=num_users)
    item_b = rng.normal(scale=0.5, size=num_items)

    mask = rng.random((num_users, num_items)) < density
    users, items = np.nonzero(mask)
    raw = 3.0 + user_b[users] + item_b[items] + (user_f[users] * item_f[items]).sum(axis=1)
    ratings = np.clip(np.rint(raw), 1, 5).astype(np.float32)

    genre_flags = (rng.random((num_items, N_GENRES)) < 0.2).astype(np.float32)
    genre_flags[:, 8] = np.where(genre_flags.sum(axis=1) == 0, 1.0, genre_flags[:, 8])
    return RatingStore.from_triples(
        users, items, ratings, num_users=num_users, num_items=num_items, genre_flags=genre_flags
    )


@pytest.fixture
def synthetic_store():
    return make_synthetic_store()


@pytest.fixture
def mf_config():
    return TrainingConfig(
        architecture="mf",
        embedding_dim=8,
        epochs=12,
        batch_size=64,
        learning_rate=0.05,
        l2_lambda=1e-4,
        seed=7,
    )


@pytest.fixture
def two_tower_config():
    return TrainingConfig(
        architecture="two_tower",
        embedding_dim=8,
        epochs=3,
        batch_size=64,
        learning_rate=0.01,
        seed=7,
    )
