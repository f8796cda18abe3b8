"""
One interactive recommender session: the data, the current trainer and its model.

This is the surface a UI (or a script) talks to. It holds at most one trained
model at a time; starting a new run releases the previous one first.
"""
from pathlib import Path
from typing import AsyncIterator, Literal

import numpy as np
import pandas as pd
import torch

from movierec.data.features import build_user_genre_matrix
from movierec.data.preprocess import build_positive_pairs
from movierec.data.store import Movie, RatingStore
from movierec.engine import baselines
from movierec.engine.metrics import evaluate_topk
from movierec.engine.retrieval import Recommendation, Retriever
from movierec.engine.trainer import BaseTrainer, EpochReport, TrainingState, TwoTowerTrainer, make_trainer
from movierec.utils.config import Settings, TrainingConfig
from movierec.utils.errors import DataNotLoadedError, ModelNotTrainedError
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


class RecommenderSession:
    def __init__(self, settings: Settings | None = None, *, device: str | torch.device | None = None) -> None:
        self.settings = settings or Settings()
        self.device = device or self.settings.device
        self.store: RatingStore | None = None
        self.trainer: BaseTrainer | None = None
        self._user_genres: np.ndarray | None = None

    # ------------------------------------------------------------------
    # data
    # ------------------------------------------------------------------
    def load(self, data_dir: str | Path | None = None) -> RatingStore:
        data_dir = Path(data_dir or self.settings.data_dir)
        logger.info(f"Loading MovieLens data from {data_dir}")
        return self.load_store(RatingStore.from_directory(data_dir))

    def load_store(self, store: RatingStore) -> RatingStore:
        """Swap in a new store; any model trained on the previous one is dropped."""
        self._release_trainer()
        self.store = store
        self._user_genres = None
        return store

    def _require_store(self) -> RatingStore:
        if self.store is None:
            raise DataNotLoadedError()
        return self.store

    # ------------------------------------------------------------------
    # training
    # ------------------------------------------------------------------
    @property
    def state(self) -> TrainingState:
        return self.trainer.state if self.trainer is not None else TrainingState.IDLE

    @property
    def is_trained(self) -> bool:
        return self.trainer is not None and self.trainer.is_trained

    def _release_trainer(self) -> None:
        if self.trainer is None:
            return
        if self.trainer.state is TrainingState.TRAINING:
            raise RuntimeError("Cancel the running training before starting a new one")
        self.trainer.release()
        self.trainer = None

    async def train_model(self, config: TrainingConfig | None = None) -> AsyncIterator[EpochReport]:
        """Train a fresh model and stream one report per completed epoch.

        Stop early with `cancel()`; the model keeps the parameters of the last
        applied batch but is not considered trained.
        """
        store = self._require_store()
        config = config or TrainingConfig()
        self._release_trainer()
        self.trainer = make_trainer(store, config, device=self.device)

        stream = self.trainer.fit()
        try:
            async for report in stream:
                yield report
        except Exception as exc:
            logger.error(f"Training run aborted: {exc}")
            raise
        finally:
            # a consumer that stops listening must not leave the trainer in TRAINING
            await stream.aclose()

    def cancel(self) -> None:
        if self.trainer is not None:
            self.trainer.cancel()

    # ------------------------------------------------------------------
    # recommendations
    # ------------------------------------------------------------------
    def retriever(self) -> Retriever:
        if not self.is_trained:
            raise ModelNotTrainedError()
        return Retriever(self._require_store(), self.trainer.model)

    def recommend(self, raw_user_id, top_k: int = 10) -> list[Recommendation]:
        return self.retriever().recommend(raw_user_id, top_k)

    def evaluate(self, *, K: int = 10, n_neg: int = 99, seed: int = 42, progress: bool = False) -> dict[str, float]:
        """HR/nDCG/MRR of the trained model on the held-out positives of its last run."""
        if not self.is_trained:
            raise ModelNotTrainedError()
        store = self._require_store()
        trainer = self.trainer
        split = trainer.split

        if isinstance(trainer, TwoTowerTrainer):
            users, items = trainer.positives.users, trainer.positives.items
            train_df = pd.DataFrame({"user": users[split.train_idx], "item": items[split.train_idx]})
            test_df = pd.DataFrame({"user": users[split.val_idx], "item": items[split.val_idx]})
        else:
            frame = store.to_frame()
            train_df = frame.iloc[split.train_idx]
            test_df = frame.iloc[split.val_idx]
            test_df = test_df[test_df["rating"] >= trainer.config.pos_rating_threshold]

        return evaluate_topk(
            trainer.model, test_df, train_df, store.num_items,
            K=K, n_neg=n_neg, seed=seed, device=trainer.device, progress=progress,
        )

    # ------------------------------------------------------------------
    # baselines
    # ------------------------------------------------------------------
    def historical_top(self, k: int = 10, *, min_ratings: int = 50) -> pd.DataFrame:
        return baselines.historical_top(self._require_store(), k, min_ratings=min_ratings)

    def content_recommendations(self, raw_user_id, k: int = 10) -> list[Recommendation]:
        store = self._require_store()
        if self._user_genres is None:
            self._user_genres = build_user_genre_matrix(store, build_positive_pairs(store))
        return baselines.content_recommendations(store, self._user_genres, store.user_index(raw_user_id), k)

    def similar_movies(
        self,
        raw_item_id,
        k: int = 2,
        *,
        metric: Literal["cosine", "jaccard"] = "cosine",
    ) -> list[tuple[Movie, float]]:
        return baselines.similar_movies(self._require_store(), raw_item_id, k, metric=metric)

    def pick_user(self, min_rated: int = 5):
        return baselines.pick_user(self._require_store(), min_rated)
