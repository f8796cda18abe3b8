"""Top-K retrieval over a trained model with already-rated items filtered out."""
import torch
from pydantic import BaseModel

from movierec.data.store import RatingStore
from movierec.models.mf import BiasedMatrixFactorization
from movierec.models.two_tower import TwoTowerModel
from movierec.utils.errors import UnknownUserError


class ScoreExplanation(BaseModel):
    """Additive parts of a biased-MF prediction: mu + bu + bi + dot."""
    mu: float
    bu: float
    bi: float
    dot: float

    @property
    def total(self) -> float:
        return self.mu + self.bu + self.bi + self.dot


class Recommendation(BaseModel):
    rank: int
    item_index: int
    raw_item_id: int
    title: str
    year: int | None = None
    genres: list[str]
    score: float
    explanation: ScoreExplanation | None = None


class Retriever:
    """Ranks all items for a user with exact dense scoring.

    The model is asked for an inflated candidate list (``max(5k, 200)``) so
    that enough items survive once the user's rated items are removed.
    """

    def __init__(
        self,
        store: RatingStore,
        model: BiasedMatrixFactorization | TwoTowerModel,
        *,
        headroom: int = 5,
        min_candidates: int = 200,
    ) -> None:
        self.store = store
        self.model = model
        self.headroom = headroom
        self.min_candidates = min_candidates

    def top_k_indices(self, user: int, k: int = 10, exclude_seen: bool = True) -> list[tuple[int, float]]:
        """[(item index, score)] in score order, at most `k` entries."""
        if not 0 <= user < self.store.num_users:
            raise UnknownUserError(user)
        num_items = self.store.num_items
        k = max(0, min(int(k), num_items))
        if k == 0:
            return []

        seen = self.store.rated_items(user) if exclude_seen else frozenset()
        n_candidates = min(num_items, max(k * self.headroom, self.min_candidates))
        while True:
            indices, scores = self.model.top_k_for_user(user, n_candidates)
            ranked = [
                (int(i), float(s))
                for i, s in zip(indices.tolist(), scores.tolist())
                if int(i) not in seen
            ][:k]
            # too many candidates were already rated: rank the full catalogue instead
            if len(ranked) >= k or n_candidates >= num_items:
                return ranked
            n_candidates = num_items

    def recommend_for_index(self, user: int, k: int = 10, exclude_seen: bool = True) -> list[Recommendation]:
        ranked = self.top_k_indices(user, k, exclude_seen)
        parts = self.model.explain(user) if isinstance(self.model, BiasedMatrixFactorization) else None

        out = []
        for rank, (item, score) in enumerate(ranked, start=1):
            movie = self.store.movies[item]
            explanation = None
            if parts is not None:
                explanation = ScoreExplanation(
                    mu=float(parts["mu"]),
                    bu=float(parts["bu"]),
                    bi=float(parts["bi"][item]),
                    dot=float(parts["dot"][item]),
                )
            out.append(
                Recommendation(
                    rank=rank,
                    item_index=item,
                    raw_item_id=movie.raw_id,
                    title=movie.title,
                    year=movie.year,
                    genres=movie.genres,
                    score=score,
                    explanation=explanation,
                )
            )
        return out

    @torch.no_grad()
    def recommend(self, raw_user_id, k: int = 10, exclude_seen: bool = True) -> list[Recommendation]:
        return self.recommend_for_index(self.store.user_index(raw_user_id), k, exclude_seen)
