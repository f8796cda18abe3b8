"""Module containing implementation of custom loss functions used in models' training."""
import torch
import torch.nn.functional as F


def bpr_loss(
    pos_scores: torch.Tensor,
    neg_scores: torch.Tensor,
) -> torch.Tensor:
    """Computes the Bayesian Personalized Ranking (BPR) loss.

    BPR loss is used in implicit feedback recommendation systems
    to optimize the relative ranking between positive and negative items.
    It maximizes the probability that a user prefers a positive item over a negative one,
    using the log-sigmoid of the score difference.

    Args:
        pos_scores (torch.Tensor): Tensor of predicted scores for positive (preferred) items
            for a batch of user-item pairs; shape [batch_size].
        neg_scores (torch.Tensor): Tensor of predicted scores for negative (non-preferred) items
            for the same batch of users; shape [batch_size].

    Returns:
        torch.Tensor: Scalar tensor representing the mean BPR loss over the batch.
    """
    if pos_scores.dim() == 1 and neg_scores.dim() == 2:
        pos_scores = pos_scores.unsqueeze(1)  # (B,) -> (B, 1) for broadcasting

    loss = F.softplus(-(pos_scores - neg_scores))  # stable −log σ(x) = softplus(−x)

    return loss.mean()


def in_batch_softmax_loss(
    user_emb: torch.Tensor,
    pos_item_emb: torch.Tensor,
) -> torch.Tensor:
    """Sampled softmax where every other item of the batch acts as a negative.

    Row *b* of the logit matrix ``L = U @ I_pos^T`` scores user *b* against all
    positives of the batch; its diagonal entry is the true pair.

    Args:
        user_emb (torch.Tensor): User embeddings, shape [B, D].
        pos_item_emb (torch.Tensor): Embeddings of each user's positive item, shape [B, D].

    Returns:
        torch.Tensor: ``-mean(diag(L) - logsumexp(L, dim=1))``.
    """
    logits = user_emb @ pos_item_emb.t()                     # (B, B)
    log_prob = logits.diagonal() - torch.logsumexp(logits, dim=1)
    return -log_prob.mean()


def mse_loss(predicted: torch.Tensor, actual: torch.Tensor) -> torch.Tensor:
    err = predicted - actual
    return (err * err).mean()


def l2_penalty(*tensors: torch.Tensor) -> torch.Tensor:
    """Sum of squares over the given (batch-gathered) tensors."""
    return torch.stack([(t * t).sum() for t in tensors]).sum()
