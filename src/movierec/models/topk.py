import torch


def stable_top_k(scores: torch.Tensor, k: int) -> tuple[torch.Tensor, torch.Tensor]:
    """The `k` largest entries of a 1-D score vector.

    Equal scores keep ascending index order (stable descending sort), unlike
    `torch.topk` whose tie order is unspecified.
    """
    k = max(0, min(int(k), scores.numel()))
    values, indices = torch.sort(scores, descending=True, stable=True)
    return indices[:k], values[:k]
