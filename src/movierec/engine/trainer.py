"""
Cooperative training loops for the biased MF and the two-tower model.

Both trainers share one state machine::

    IDLE -> TRAINING -> COMPLETED | CANCELLED | FAILED

`fit()` is an async generator yielding one `EpochReport` per finished epoch.
It hands control back to the event loop every `yield_every` batches and
between validation chunks, so a cancellation request or progress poll from
the caller is observed promptly.
"""
import asyncio
import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator

import numpy as np
import torch
from pydantic import BaseModel

from movierec.data.features import build_item_genre_matrix, build_user_genre_matrix
from movierec.data.preprocess import PositivePairs, Split, build_positive_pairs, train_val_split
from movierec.data.store import RatingStore
from movierec.engine.losses import mse_loss
from movierec.models.mf import BiasedMatrixFactorization
from movierec.models.two_tower import TwoTowerModel
from movierec.utils.config import TrainingConfig
from movierec.utils.errors import DataNotLoadedError, NumericalInstabilityError
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


class TrainingState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EpochReport(BaseModel):
    epoch: int
    epochs: int
    train_loss: float
    train_rmse: float | None = None
    val_rmse: float | None = None
    val_loss: float | None = None


class CancellationToken:
    """Advisory stop flag; checked by the loop at epoch and batch boundaries."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class BaseTrainer(ABC):
    """Owns one model instance and its optimiser for the duration of a run."""

    def __init__(
        self,
        store: RatingStore | None,
        config: TrainingConfig | None = None,
        *,
        device: str | torch.device = "cuda" if torch.cuda.is_available() else "cpu",
    ) -> None:
        self.store = store
        self.config = config or TrainingConfig()
        self.device = torch.device(device)

        self.state = TrainingState.IDLE
        self.model: torch.nn.Module | None = None
        self.optimizer: torch.optim.Optimizer | None = None
        self.split: Split | None = None
        self.token = CancellationToken()
        self.history: list[EpochReport] = []
        self.loss_history: list[float] = []
        self.error: Exception | None = None

        seed = self.config.seed
        self.rng = np.random.default_rng(seed)
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        self.token.cancel()

    def release(self) -> None:
        """Drop the model and optimiser so nothing leaks into the next run."""
        if self.state is TrainingState.TRAINING:
            raise RuntimeError("Cannot release parameters while training is in progress")
        self._free()
        self.state = TrainingState.IDLE

    def _free(self) -> None:
        self.model = None
        self.optimizer = None
        self.split = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()

    @property
    def is_trained(self) -> bool:
        return self.state is TrainingState.COMPLETED and self.model is not None

    async def fit(self, token: CancellationToken | None = None) -> AsyncIterator[EpochReport]:
        if self.state is TrainingState.TRAINING:
            raise RuntimeError("Training is already in progress on this trainer")
        if self.store is None:
            raise DataNotLoadedError()

        self.token = token or self.token
        self.release()
        self.split = self._prepare()            # validates the split before allocating anything
        self.model = self._build_model().to(self.device)
        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=self.config.learning_rate)
        self.token.reset()
        self.history = []
        self.loss_history = []
        self.error = None
        self.state = TrainingState.TRAINING

        epochs = self.config.epochs
        logger.info(
            f"Training {type(self.model).__name__} | epochs: {epochs} | batch: {self.config.batch_size} | "
            f"train: {len(self.split.train_idx):,} | val: {len(self.split.val_idx):,}"
        )
        epoch = 0
        try:
            for epoch in range(1, epochs + 1):
                if self.token.cancelled:
                    break
                report = await self._run_epoch(epoch)
                if report is None:                  # cancelled mid-epoch
                    break
                self.history.append(report)
                logger.info(self._format_report(report))
                yield report
        except (GeneratorExit, asyncio.CancelledError):
            # consumer stopped listening or its task was cancelled: same as a cancellation
            self.state = TrainingState.CANCELLED
            logger.info(f"Training interrupted after {len(self.history)} completed epoch(s)")
            raise
        except Exception as exc:
            self.state = TrainingState.FAILED
            self.error = exc
            logger.error(f"Training failed at epoch {epoch}: {exc}")
            self._free()
            raise

        if self.token.cancelled:
            self.state = TrainingState.CANCELLED
            logger.info(f"Training cancelled after {len(self.history)} completed epoch(s)")
        else:
            self.state = TrainingState.COMPLETED
            self.model.eval()

    def fit_sync(self, token: CancellationToken | None = None) -> list[EpochReport]:
        """Run `fit` to completion outside of an event loop."""
        async def _collect():
            return [report async for report in self.fit(token)]
        return asyncio.run(_collect())

    # ------------------------------------------------------------------
    # epoch loop
    # ------------------------------------------------------------------
    async def _run_epoch(self, epoch: int) -> EpochReport | None:
        order = self.rng.permutation(self.split.train_idx)   # fresh shuffle every epoch
        batch_size = self.config.batch_size
        loss_sum = 0.0
        sq_err_sum = 0.0
        seen = 0

        for step, start in enumerate(range(0, len(order), batch_size)):
            if self.token.cancelled:
                return None
            batch_idx = order[start:start + batch_size]
            try:
                loss_value, sq_err = self._train_batch(batch_idx)
            except NumericalInstabilityError as exc:
                raise exc.with_context(epoch, step + 1) from exc

            self.loss_history.append(loss_value)
            loss_sum += loss_value * len(batch_idx)
            sq_err_sum += sq_err
            seen += len(batch_idx)

            if (step + 1) % self.config.yield_every == 0:
                await asyncio.sleep(0)

        return await self._end_epoch(epoch, loss_sum / max(1, seen), sq_err_sum / max(1, seen))

    async def _chunks(self, indices: np.ndarray, chunk_size: int | None = None):
        """Walk `indices` in `val_chunk_size` pieces, yielding to the loop between pieces."""
        chunk = chunk_size or self.config.val_chunk_size
        for start in range(0, len(indices), chunk):
            yield indices[start:start + chunk]
            await asyncio.sleep(0)

    def _to_tensor(self, array: np.ndarray, dtype=torch.long) -> torch.Tensor:
        return torch.as_tensor(array, dtype=dtype, device=self.device)

    def _check_finite(self, loss: torch.Tensor) -> float:
        value = float(loss.detach())
        if not math.isfinite(value):
            raise NumericalInstabilityError(value)
        return value

    @staticmethod
    def _format_report(report: EpochReport) -> str:
        parts = [f"Epoch {report.epoch}/{report.epochs}", f"loss = {report.train_loss:.4f}"]
        if report.train_rmse is not None:
            parts.append(f"train RMSE = {report.train_rmse:.4f}")
        if report.val_rmse is not None:
            parts.append(f"val RMSE = {report.val_rmse:.4f}")
        if report.val_loss is not None:
            parts.append(f"val loss = {report.val_loss:.4f}")
        return " | ".join(parts)

    @abstractmethod
    def _prepare(self) -> Split:
        """Derive training data from the store and return a validated split."""

    @abstractmethod
    def _build_model(self) -> torch.nn.Module:
        ...

    @abstractmethod
    def _train_batch(self, batch_idx: np.ndarray) -> tuple[float, float]:
        """One optimiser step; returns (loss, summed squared error or 0)."""

    @abstractmethod
    async def _end_epoch(self, epoch: int, mean_loss: float, mean_sq_err: float) -> EpochReport:
        ...


class MFTrainer(BaseTrainer):
    """Mini-batch Adam on MSE + batch-scoped L2 over rating triples."""

    model: BiasedMatrixFactorization | None

    def _prepare(self) -> Split:
        return train_val_split(len(self.store), self.config.train_fraction, rng=self.rng)

    def _build_model(self) -> BiasedMatrixFactorization:
        return BiasedMatrixFactorization(
            self.store.num_users,
            self.store.num_items,
            self.config.embedding_dim,
            global_mean=self.store.stats.mean_rating,
            rating_range=(self.config.rating_min, self.config.rating_max),
            generator=self.generator,
        )

    def _batch_tensors(self, batch_idx: np.ndarray):
        return (
            self._to_tensor(self.store.users[batch_idx]),
            self._to_tensor(self.store.items[batch_idx]),
            self._to_tensor(self.store.ratings[batch_idx], dtype=torch.float32),
        )

    def _train_batch(self, batch_idx: np.ndarray) -> tuple[float, float]:
        users, items, ratings = self._batch_tensors(batch_idx)
        self.model.train()
        try:
            self.optimizer.zero_grad(set_to_none=True)
            # unclipped prediction: clipping would zero the gradient at the rating bounds
            mse = mse_loss(self.model(users, items), ratings)
            loss = mse + self.config.l2_lambda * self.model.regularization(users, items)
            loss_value = self._check_finite(loss)
            loss.backward()
            self.optimizer.step()
            return loss_value, float(mse.detach()) * len(batch_idx)
        finally:
            self.optimizer.zero_grad(set_to_none=True)
            del users, items, ratings

    async def rmse(self, indices: np.ndarray) -> float:
        """RMSE of the unclipped prediction over `indices`, chunked; NaN for an empty set."""
        if len(indices) == 0:
            return float("nan")
        self.model.eval()
        sse = 0.0
        async for chunk in self._chunks(indices):
            users, items, ratings = self._batch_tensors(chunk)
            with torch.no_grad():
                err = self.model(users, items) - ratings
                sse += float((err * err).sum())
        return math.sqrt(sse / len(indices))

    async def _end_epoch(self, epoch: int, mean_loss: float, mean_sq_err: float) -> EpochReport:
        return EpochReport(
            epoch=epoch,
            epochs=self.config.epochs,
            train_loss=mean_loss,
            train_rmse=math.sqrt(mean_sq_err),
            val_rmse=await self.rmse(self.split.val_idx),
        )


class TwoTowerTrainer(BaseTrainer):
    """Trains a `TwoTowerModel` on positive (user, item) pairs."""

    model: TwoTowerModel | None

    def __init__(self, store, config=None, **kwargs) -> None:
        super().__init__(store, config, **kwargs)
        self.positives: PositivePairs | None = None
        self.user_genres: np.ndarray | None = None
        self.item_genres: np.ndarray | None = None

    def _prepare(self) -> Split:
        cfg = self.config
        self.positives = build_positive_pairs(
            self.store,
            threshold=cfg.pos_rating_threshold,
            relaxed_threshold=cfg.relaxed_rating_threshold,
            min_pairs=cfg.min_positive_pairs,
        )
        self.item_genres = build_item_genre_matrix(self.store) if cfg.use_item_genres else None
        self.user_genres = build_user_genre_matrix(self.store, self.positives) if cfg.use_user_genres else None
        return train_val_split(len(self.positives), cfg.train_fraction, rng=self.rng)

    def _build_model(self) -> TwoTowerModel:
        cfg = self.config
        return TwoTowerModel(
            self.store.num_users,
            self.store.num_items,
            cfg.embedding_dim,
            hidden_dim=cfg.resolved_hidden_dim,
            loss_type=cfg.loss_type,
            l2=cfg.l2_lambda,
            normalize=cfg.normalize,
            item_genres=self.item_genres,
            user_genres=self.user_genres,
            normalize_feature_rows=False,     # already L2-normalised
            item_chunk_size=cfg.item_chunk_size,
            generator=self.generator,
        )

    def _pair_tensors(self, idx: np.ndarray):
        return self._to_tensor(self.positives.users[idx]), self._to_tensor(self.positives.items[idx])

    def _train_batch(self, batch_idx: np.ndarray) -> tuple[float, float]:
        users, items = self._pair_tensors(batch_idx)
        return self.model.train_step(users, items, self.optimizer), 0.0

    async def validation_loss(self, indices: np.ndarray) -> float:
        """Mean loss (without L2) over pairs in `indices`; NaN for an empty set."""
        if len(indices) == 0:
            return float("nan")
        self.model.eval()
        # in-batch softmax sees as many negatives as the batch holds: score it at the training batch size
        chunk_size = self.config.batch_size if self.model.loss_type == "softmax" else None
        total = 0.0
        async for chunk in self._chunks(indices, chunk_size):
            users, items = self._pair_tensors(chunk)
            with torch.no_grad():
                total += float(self.model.compute_loss(users, items, include_l2=False)) * len(chunk)
        return total / len(indices)

    async def _end_epoch(self, epoch: int, mean_loss: float, mean_sq_err: float) -> EpochReport:
        return EpochReport(
            epoch=epoch,
            epochs=self.config.epochs,
            train_loss=mean_loss,
            val_loss=await self.validation_loss(self.split.val_idx),
        )


def make_trainer(store: RatingStore | None, config: TrainingConfig, **kwargs) -> BaseTrainer:
    if config.architecture == "two_tower":
        return TwoTowerTrainer(store, config, **kwargs)
    return MFTrainer(store, config, **kwargs)
