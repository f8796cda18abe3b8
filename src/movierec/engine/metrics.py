from tqdm.auto import tqdm

import numpy as np
import pandas as pd
import torch

from movierec.models.mf import BiasedMatrixFactorization
from movierec.models.two_tower import TwoTowerModel
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


def _rank_metrics(rank: int, K: int) -> tuple[int, float, float]:
    """Return (hit, ndcg, mrr) for a single user given *rank* of the positive."""
    hit = 1 if rank < K else 0  # positive made it into the top K
    ndcg = (1 / np.log2(rank + 2)) if hit else 0.0  # earlier positions weigh more
    mrr = 1 / (rank + 1) if hit else 0.0
    return hit, ndcg, mrr


def evaluate_topk(
    model: BiasedMatrixFactorization | TwoTowerModel,
    test_df_pos: pd.DataFrame,
    train_df_pos: pd.DataFrame,
    num_items: int,
    *,
    K: int = 10,
    n_neg: int = 99,
    seed: int = 42,
    device: str | torch.device = "cuda" if torch.cuda.is_available() else "cpu",
    progress: bool = True,
) -> dict[str, float]:
    """Compute HR@K, nDCG@K, MRR@K with sampled negatives.

    Every held-out positive (user, item) is ranked against *n_neg* items the
    user never interacted with in **training**. Both model types are scored
    with their raw forward pass (unclipped for MF).
    Positives whose user has no candidate negatives left are skipped; with
    nothing to evaluate every metric is NaN.
    """
    rng = np.random.default_rng(seed)
    model = model.to(device).eval()

    all_items = np.arange(num_items)
    hits, ndcgs, mrrs = [], [], []

    train_items_by_user: dict[int, set[int]] = (
        train_df_pos.groupby("user")["item"].apply(set).to_dict()
    )

    with torch.no_grad():
        for user, pos_item in tqdm(
            test_df_pos[["user", "item"]].itertuples(index=False, name=None),
            total=len(test_df_pos),
            desc="Evaluating",
            unit="pair",
            disable=not progress,
            bar_format="{l_bar}{bar:30} | {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        ):
            user = int(user)
            pos_item = int(pos_item)

            forbidden = train_items_by_user.get(user, set()) | {pos_item}
            candidates = np.setdiff1d(all_items, np.fromiter(forbidden, dtype=np.int64), assume_unique=True)
            if len(candidates) == 0:
                continue

            neg_items = rng.choice(candidates, size=min(n_neg, len(candidates)), replace=False)
            item_ids = np.concatenate(([pos_item], neg_items))
            user_ids = np.full_like(item_ids, user)

            users_t = torch.as_tensor(user_ids, dtype=torch.long, device=device)
            items_t = torch.as_tensor(item_ids, dtype=torch.long, device=device)
            scores = model(users_t, items_t).cpu().numpy()

            # position of the positive (index 0) in the descending order; ties favour the positive
            rank = int(np.flatnonzero(np.argsort(-scores, kind="stable") == 0)[0])
            hit, ndcg, mrr = _rank_metrics(rank, K)
            hits.append(hit)
            ndcgs.append(ndcg)
            mrrs.append(mrr)

    if not hits:
        logger.warning("No evaluable positives; ranking metrics are undefined")
        nan = float("nan")
        return {f"HR@{K}": nan, f"nDCG@{K}": nan, f"MRR@{K}": nan}

    return {
        f"HR@{K}": float(np.mean(hits)),
        f"nDCG@{K}": float(np.mean(ndcgs)),
        f"MRR@{K}": float(np.mean(mrrs)),
    }
