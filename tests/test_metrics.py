import math

import pandas as pd
import pytest
import torch

from movierec.engine.metrics import _rank_metrics, evaluate_topk
from movierec.models.mf import BiasedMatrixFactorization


def test_rank_metrics():
    assert _rank_metrics(0, 10) == (1, 1.0, 1.0)
    hit, ndcg, mrr = _rank_metrics(2, 10)
    assert hit == 1
    assert ndcg == pytest.approx(0.5)
    assert mrr == pytest.approx(1 / 3)
    assert _rank_metrics(10, 10) == (0, 0.0, 0.0)


def _biased_model(num_items: int, best_item: int) -> BiasedMatrixFactorization:
    model = BiasedMatrixFactorization(3, num_items, 2, global_mean=3.0)
    with torch.no_grad():
        model.user_emb.weight.zero_()
        model.item_bias.weight.zero_()
        model.item_bias.weight[best_item] = 1.0
    return model


def test_perfect_model_scores_one():
    model = _biased_model(30, best_item=5)
    test = pd.DataFrame({"user": [0, 1], "item": [5, 5]})
    train = pd.DataFrame({"user": [0, 2], "item": [1, 2]})
    metrics = evaluate_topk(model, test, train, 30, K=5, n_neg=20, device="cpu", progress=False)
    assert metrics == {"HR@5": 1.0, "nDCG@5": 1.0, "MRR@5": 1.0}


def test_worst_model_misses():
    model = _biased_model(30, best_item=5)
    with torch.no_grad():
        model.item_bias.weight.fill_(1.0)
        model.item_bias.weight[7] = -1.0
    test = pd.DataFrame({"user": [0], "item": [7]})
    metrics = evaluate_topk(model, test, test.iloc[:0], 30, K=5, n_neg=20, device="cpu", progress=False)
    assert metrics["HR@5"] == 0.0
    assert metrics["MRR@5"] == 0.0


def test_nothing_to_evaluate_is_nan():
    model = _biased_model(2, best_item=0)
    test = pd.DataFrame({"user": [0], "item": [0]})
    train = pd.DataFrame({"user": [0], "item": [1]})
    metrics = evaluate_topk(model, test, train, 2, K=1, device="cpu", progress=False)
    assert all(math.isnan(v) for v in metrics.values())
