"""Module containing the biased Matrix Factorization (MF) pytorch model definition."""
import torch
import torch.nn as nn

from movierec.models.topk import stable_top_k


class BiasedMatrixFactorization(nn.Module):
    """
    Biased Matrix Factorization for explicit ratings.

    r_hat(u, i) = mu + b_u + b_i + <p_u, q_i>

    The global bias `mu` is fixed to the dataset mean rating and registered as
    a buffer, so the optimiser never touches it.

    Attributes:
        user_emb (nn.Embedding): Latent factors P, shape (U, K).
        item_emb (nn.Embedding): Latent factors Q, shape (I, K).
        user_bias (nn.Embedding): b_u, shape (U, 1).
        item_bias (nn.Embedding): b_i, shape (I, 1).
    """
    def __init__(
        self,
        num_users: int,
        num_items: int,
        embedding_dim: int = 16,
        *,
        global_mean: float = 0.0,
        rating_range: tuple[float, float] = (1.0, 5.0),
        generator: torch.Generator | None = None,
    ) -> None:
        super().__init__()
        self.num_users = num_users
        self.num_items = num_items
        self.embedding_dim = embedding_dim
        self.rating_min, self.rating_max = rating_range

        self.user_emb = nn.Embedding(num_users, embedding_dim)
        self.item_emb = nn.Embedding(num_items, embedding_dim)

        # Bias layers capture rating tendencies independent of the interaction,
        # like users who consistently rate higher or lower
        self.user_bias = nn.Embedding(num_users, 1)
        self.item_bias = nn.Embedding(num_items, 1)

        self.register_buffer("global_bias", torch.tensor(float(global_mean), dtype=torch.float32))

        nn.init.normal_(self.user_emb.weight, 0.0, 0.01, generator=generator)
        nn.init.normal_(self.item_emb.weight, 0.0, 0.01, generator=generator)
        nn.init.zeros_(self.user_bias.weight)
        nn.init.zeros_(self.item_bias.weight)

    def forward(self, users: torch.Tensor, items: torch.Tensor) -> torch.Tensor:
        """Unclipped linear prediction, shape (B,). Used by the training loss."""
        dot = (self.user_emb(users) * self.item_emb(items)).sum(dim=1)
        bias = self.user_bias(users).squeeze(-1) + self.item_bias(items).squeeze(-1)
        return dot + bias + self.global_bias

    def predict(self, users: torch.Tensor, items: torch.Tensor) -> torch.Tensor:
        """Read-out prediction clipped into the rating range."""
        return self(users, items).clamp(self.rating_min, self.rating_max)

    def regularization(self, users: torch.Tensor, items: torch.Tensor) -> torch.Tensor:
        """Sum of squares of the rows gathered for this batch only."""
        pu = self.user_emb(users)
        qi = self.item_emb(items)
        bu = self.user_bias(users)
        bi = self.item_bias(items)
        return (pu * pu).sum() + (qi * qi).sum() + (bu * bu).sum() + (bi * bi).sum()

    @torch.no_grad()
    def explain(self, user: int) -> dict[str, torch.Tensor]:
        """Score decomposition of every item for one user.

        Returns `mu`, `bu` (scalars) and `bi`, `dot`, `total` (unclipped) and
        `predicted` (clipped), each of shape (I,).
        """
        device = self.global_bias.device
        u = torch.tensor([user], dtype=torch.long, device=device)
        pu = self.user_emb(u).reshape(-1)                       # (K,)
        dot = self.item_emb.weight @ pu                          # (I,)
        bu = self.user_bias(u).reshape(())
        bi = self.item_bias.weight.reshape(-1)                   # (I,)
        total = dot + bi + bu + self.global_bias
        return {
            "mu": self.global_bias.clone(),
            "bu": bu,
            "bi": bi,
            "dot": dot,
            "total": total,
            "predicted": total.clamp(self.rating_min, self.rating_max),
        }

    @torch.no_grad()
    def score_all_items(self, user: int) -> torch.Tensor:
        return self.explain(user)["predicted"]

    @torch.no_grad()
    def top_k_for_user(self, user: int, k: int) -> tuple[torch.Tensor, torch.Tensor]:
        """(indices, clipped scores) of the `k` best items; ties go to the lower index."""
        return stable_top_k(self.score_all_items(user), k)
