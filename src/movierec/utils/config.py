"""Training configuration and environment settings."""
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import torch
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

GENRE_COUNT = 19


def _parse_number(value, default: float) -> float:
    """Comma tolerant number parsing; anything unparsable or non-finite -> default."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def clamp_int(value, low: int, high: int, default: int) -> int:
    number = int(_parse_number(value, default))
    return max(low, min(high, number))


def clamp_float(value, low: float, high: float, default: float) -> float:
    number = _parse_number(value, default)
    return max(low, min(high, number))


class TrainingConfig(BaseModel):
    """User-editable hyperparameters.

    Numeric fields are clamped into their sane ranges instead of rejected, so a
    value typed into a form (e.g. ``"0,01"`` or ``"99999"``) always yields a
    runnable configuration.
    """
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    architecture: Literal["mf", "two_tower"] = "mf"

    # Model
    embedding_dim: int = 16
    hidden_dim: int | None = None        # two-tower only; defaults to embedding_dim + 19 + 16
    normalize: bool = True
    loss_type: Literal["softmax", "bpr"] = "softmax"
    use_user_genres: bool = True
    use_item_genres: bool = True
    rating_min: float = 1.0
    rating_max: float = 5.0

    # Optimisation
    epochs: int = 15
    batch_size: int = 2048
    learning_rate: float = 0.01
    l2_lambda: float = 1e-4
    train_fraction: float = 0.9

    # Positive pairs for the two-tower model
    pos_rating_threshold: float = 4.0
    relaxed_rating_threshold: float = 3.0
    min_positive_pairs: int = 1000

    # Cooperative loop
    yield_every: int = 2
    val_chunk_size: int = 4096
    item_chunk_size: int = 4096

    seed: int | None = None

    @field_validator("embedding_dim", mode="before")
    @classmethod
    def _clamp_embedding_dim(cls, v):
        return clamp_int(v, 2, 128, 16)

    @field_validator("hidden_dim", mode="before")
    @classmethod
    def _clamp_hidden_dim(cls, v):
        if v is None:
            return None
        return clamp_int(v, 4, 1024, 64)

    @field_validator("epochs", mode="before")
    @classmethod
    def _clamp_epochs(cls, v):
        return clamp_int(v, 1, 100, 15)

    @field_validator("batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, v):
        return clamp_int(v, 64, 4096, 2048)

    @field_validator("learning_rate", mode="before")
    @classmethod
    def _clamp_learning_rate(cls, v):
        return clamp_float(v, 1e-5, 0.5, 0.01)

    @field_validator("l2_lambda", mode="before")
    @classmethod
    def _clamp_l2(cls, v):
        return clamp_float(v, 0.0, 0.1, 1e-4)

    @field_validator("yield_every", mode="before")
    @classmethod
    def _clamp_yield_every(cls, v):
        return clamp_int(v, 1, 2, 2)

    @field_validator("val_chunk_size", "item_chunk_size", mode="before")
    @classmethod
    def _clamp_chunk(cls, v):
        return clamp_int(v, 1, 65536, 4096)

    @field_validator("train_fraction")
    @classmethod
    def _check_train_fraction(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("train_fraction must lie strictly between 0 and 1")
        return v

    @property
    def resolved_hidden_dim(self) -> int:
        return self.hidden_dim or (self.embedding_dim + GENRE_COUNT + 16)


@dataclass
class Settings:
    """Process-level settings read from the environment (and a `.env` file)."""
    data_dir: Path = field(default_factory=lambda: Path(os.getenv("MOVIEREC_DATA_DIR", "ml-100k")))
    kaggle_dataset: str = field(
        default_factory=lambda: os.getenv("MOVIEREC_KAGGLE_DATASET", "prajitdatta/movielens-100k-dataset")
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    device: str = field(
        default_factory=lambda: os.getenv("MOVIEREC_DEVICE", "cuda" if torch.cuda.is_available() else "cpu")
    )


def load_settings() -> Settings:
    load_dotenv()
    return Settings()
