"""
Two-Tower Recommendation Model.

Separate user and item encoders map (ID embedding ⧺ genre features) into a
shared space where a dot product scores a pair. Item embeddings can then be
materialised once and reused for exact top-K retrieval.
"""
from typing import Literal

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from movierec.engine.losses import bpr_loss, in_batch_softmax_loss, l2_penalty
from movierec.models.topk import stable_top_k
from movierec.utils.errors import NumericalInstabilityError


def l2_normalize_rows(x: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    """x / (||x||_2 + eps) per row."""
    return x / (x.norm(p=2, dim=1, keepdim=True) + eps)


def _as_feature_tensor(data, rows: int, name: str) -> torch.Tensor:
    tensor = torch.as_tensor(np.asarray(data, dtype=np.float32) if not isinstance(data, torch.Tensor) else data)
    tensor = tensor.detach().to(torch.float32)
    if tensor.dim() == 1:
        if rows <= 0 or tensor.numel() % rows != 0:
            raise ValueError(f"Invalid flat {name} shape: {tuple(tensor.shape)}")
        tensor = tensor.reshape(rows, -1)
    if tensor.dim() != 2 or tensor.shape[0] != rows:
        raise ValueError(f"{name} must have shape ({rows}, G), got {tuple(tensor.shape)}")
    return tensor


class Tower(nn.Module):
    """
    One tower of the two-tower model.

    ID embedding, optionally concatenated with a content row, passed through
    ``Linear -> ReLU -> Linear``. The input width is fixed at construction:
    ``embedding_dim + feature_dim``.
    """

    def __init__(
        self,
        num_entities: int,
        embedding_dim: int,
        hidden_dim: int,
        feature_dim: int = 0,
        normalize: bool = True,
        generator: torch.Generator | None = None,
    ):
        super().__init__()
        self.embedding = nn.Embedding(num_entities, embedding_dim)
        self.feature_dim = feature_dim
        self.input_dim = embedding_dim + feature_dim
        self.hidden = nn.Linear(self.input_dim, hidden_dim)
        self.out = nn.Linear(hidden_dim, embedding_dim)
        self.normalize = normalize

        nn.init.normal_(self.embedding.weight, 0.0, 0.05, generator=generator)
        for layer in (self.hidden, self.out):
            nn.init.xavier_uniform_(layer.weight, generator=generator)
            nn.init.zeros_(layer.bias)

    def forward(self, ids: torch.Tensor, features: torch.Tensor | None = None) -> torch.Tensor:
        x = self.embedding(ids)
        if features is not None:
            x = torch.cat([x, features], dim=1)
        if x.shape[1] != self.input_dim:
            raise ValueError(f"Tower expects input width {self.input_dim}, got {x.shape[1]}")

        x = self.out(F.relu(self.hidden(x)))
        if self.normalize:
            x = l2_normalize_rows(x)
        return x


class TwoTowerModel(nn.Module):
    """
    Two-Tower model with optional genre features on either side.

    Feature matrices live in buffers (not trained). Whether a tower consumes
    features, and therefore its input width, is decided by which matrices are
    passed to the constructor.
    """

    def __init__(
        self,
        num_users: int,
        num_items: int,
        embedding_dim: int = 32,
        *,
        hidden_dim: int | None = None,
        loss_type: Literal["softmax", "bpr"] = "softmax",
        l2: float = 1e-4,
        normalize: bool = True,
        item_genres=None,
        user_genres=None,
        normalize_feature_rows: bool = True,
        item_chunk_size: int = 4096,
        generator: torch.Generator | None = None,
    ):
        super().__init__()
        if loss_type not in ("softmax", "bpr"):
            raise ValueError(f"Unknown loss type: {loss_type}")

        self.num_users = num_users
        self.num_items = num_items
        self.embedding_dim = embedding_dim
        self.loss_type = loss_type
        self.l2 = l2
        self.generator = generator
        self.item_chunk_size = item_chunk_size

        item_feats = None if item_genres is None else _as_feature_tensor(item_genres, num_items, "item genres")
        user_feats = None if user_genres is None else _as_feature_tensor(user_genres, num_users, "user genres")
        hidden_dim = hidden_dim or (embedding_dim + 19 + 16)

        self.user_tower = Tower(
            num_users, embedding_dim, hidden_dim,
            feature_dim=0 if user_feats is None else user_feats.shape[1],
            normalize=normalize, generator=generator,
        )
        self.item_tower = Tower(
            num_items, embedding_dim, hidden_dim,
            feature_dim=0 if item_feats is None else item_feats.shape[1],
            normalize=normalize, generator=generator,
        )

        self.register_buffer("item_genre_matrix", None)
        self.register_buffer("user_genre_matrix", None)
        self._item_cache: torch.Tensor | None = None
        self.set_features(item_genres=item_feats, user_genres=user_feats, normalize_rows=normalize_feature_rows)

    # ------------------------------------------------------------------
    # features
    # ------------------------------------------------------------------
    def set_features(self, item_genres=None, user_genres=None, normalize_rows: bool = True) -> None:
        """Replace the content matrices. Widths must match the towers' declared widths."""
        device = self.user_tower.embedding.weight.device
        if item_genres is not None:
            feats = _as_feature_tensor(item_genres, self.num_items, "item genres")
            if feats.shape[1] != self.item_tower.feature_dim:
                raise ValueError(
                    f"Item tower was built for {self.item_tower.feature_dim} features, got {feats.shape[1]}"
                )
            self.item_genre_matrix = (l2_normalize_rows(feats) if normalize_rows else feats).to(device)
        if user_genres is not None:
            feats = _as_feature_tensor(user_genres, self.num_users, "user genres")
            if feats.shape[1] != self.user_tower.feature_dim:
                raise ValueError(
                    f"User tower was built for {self.user_tower.feature_dim} features, got {feats.shape[1]}"
                )
            self.user_genre_matrix = (l2_normalize_rows(feats) if normalize_rows else feats).to(device)
        self.invalidate_item_cache()

    # ------------------------------------------------------------------
    # towers
    # ------------------------------------------------------------------
    def user_forward(self, user_ids: torch.Tensor) -> torch.Tensor:
        """User embeddings, shape (B, D)."""
        feats = None if self.user_genre_matrix is None else self.user_genre_matrix[user_ids]
        return self.user_tower(user_ids, feats)

    def item_forward(self, item_ids: torch.Tensor) -> torch.Tensor:
        """Item embeddings, shape (B, D)."""
        feats = None if self.item_genre_matrix is None else self.item_genre_matrix[item_ids]
        return self.item_tower(item_ids, feats)

    @staticmethod
    def score(user_emb: torch.Tensor, item_emb: torch.Tensor) -> torch.Tensor:
        return (user_emb * item_emb).sum(dim=1)

    def forward(self, user_ids: torch.Tensor, item_ids: torch.Tensor) -> torch.Tensor:
        return self.score(self.user_forward(user_ids), self.item_forward(item_ids))

    # ------------------------------------------------------------------
    # training
    # ------------------------------------------------------------------
    def sample_negatives(self, pos_items: torch.Tensor, max_retries: int = 10) -> torch.Tensor:
        """One uniform negative per positive, redrawing exact duplicates of the positive.

        After `max_retries` rounds any remaining collision is shifted to the
        next item index.
        """
        device = pos_items.device
        neg = torch.randint(0, self.num_items, pos_items.shape, generator=self.generator).to(device)
        if self.num_items < 2:
            return neg
        for _ in range(max_retries):
            clash = neg == pos_items
            if not clash.any():
                return neg
            redraw = torch.randint(0, self.num_items, (int(clash.sum()),), generator=self.generator).to(device)
            neg[clash] = redraw
        clash = neg == pos_items
        neg[clash] = (pos_items[clash] + 1) % self.num_items
        return neg

    def compute_loss(
        self,
        users: torch.Tensor,
        pos_items: torch.Tensor,
        neg_items: torch.Tensor | None = None,
        *,
        include_l2: bool = True,
    ) -> torch.Tensor:
        user_emb = self.user_forward(users)
        pos_emb = self.item_forward(pos_items)

        if self.loss_type == "bpr":
            if neg_items is None:
                neg_items = self.sample_negatives(pos_items)
            neg_emb = self.item_forward(neg_items)
            loss = bpr_loss(self.score(user_emb, pos_emb), self.score(user_emb, neg_emb))
        else:
            loss = in_batch_softmax_loss(user_emb, pos_emb)

        if include_l2 and self.l2 > 0:
            user_rows = self.user_tower.embedding(users)
            item_rows = self.item_tower.embedding(pos_items)
            loss = loss + self.l2 * l2_penalty(user_emb, pos_emb, user_rows, item_rows)
        return loss

    def train_step(
        self,
        users: torch.Tensor,
        pos_items: torch.Tensor,
        optimizer: torch.optim.Optimizer,
    ) -> float:
        """One optimiser step on a batch of (user, positive item) pairs; returns the loss."""
        self.train()
        try:
            optimizer.zero_grad(set_to_none=True)
            loss = self.compute_loss(users, pos_items)
            loss_value = float(loss.detach())
            if not np.isfinite(loss_value):
                raise NumericalInstabilityError(loss_value)
            loss.backward()
            optimizer.step()
        finally:
            optimizer.zero_grad(set_to_none=True)
            self.invalidate_item_cache()
        return loss_value

    # ------------------------------------------------------------------
    # inference
    # ------------------------------------------------------------------
    def invalidate_item_cache(self) -> None:
        self._item_cache = None

    @torch.no_grad()
    def user_embedding(self, user: int) -> torch.Tensor:
        device = self.user_tower.embedding.weight.device
        return self.user_forward(torch.tensor([user], dtype=torch.long, device=device)).reshape(-1)

    @torch.no_grad()
    def materialize_item_embeddings(self, chunk_size: int | None = None) -> torch.Tensor:
        """All item embeddings (I, D), computed chunk by chunk and cached until the next change."""
        if self._item_cache is not None:
            return self._item_cache
        chunk_size = chunk_size or self.item_chunk_size
        was_training = self.training
        self.eval()
        device = self.item_tower.embedding.weight.device
        chunks = [
            self.item_forward(torch.arange(start, min(self.num_items, start + chunk_size), device=device))
            for start in range(0, self.num_items, chunk_size)
        ]
        self.train(was_training)
        self._item_cache = (
            torch.cat(chunks, dim=0) if chunks else torch.zeros(0, self.embedding_dim, device=device)
        )
        return self._item_cache

    @torch.no_grad()
    def score_all_items(self, user: int, chunk_size: int | None = None) -> torch.Tensor:
        return self.materialize_item_embeddings(chunk_size) @ self.user_embedding(user)

    @torch.no_grad()
    def top_k_for_user(self, user: int, k: int, chunk_size: int | None = None) -> tuple[torch.Tensor, torch.Tensor]:
        """(indices, scores) of the `k` highest dot products; ties go to the lower index."""
        return stable_top_k(self.score_all_items(user, chunk_size), k)
