"""Genre content features for the two-tower model and the content baseline."""
import numpy as np

from movierec.data.preprocess import PositivePairs
from movierec.data.store import RatingStore


def l2_normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Scale every row to unit L2 norm; all-zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.sqrt((matrix * matrix).sum(axis=1, keepdims=True))
    norms[norms == 0] = 1.0
    return matrix / norms


def build_item_genre_matrix(store: RatingStore) -> np.ndarray:
    """Row *i* is the L2-normalised genre vector of item *i*, shape (I, 19)."""
    return l2_normalize_rows(store.genre_matrix())


def build_user_genre_matrix(store: RatingStore, positives: PositivePairs) -> np.ndarray:
    """Sum the raw genre flags of every positively rated item per user, then L2-normalise.

    Users without positives keep an all-zero row.
    """
    genres = store.genre_matrix()
    user_genres = np.zeros((store.num_users, genres.shape[1]), dtype=np.float32)
    np.add.at(user_genres, positives.users, genres[positives.items])
    return l2_normalize_rows(user_genres)
