import numpy as np
import pytest
import torch

from movierec.models.two_tower import Tower, TwoTowerModel, l2_normalize_rows
from movierec.utils.errors import NumericalInstabilityError


def _genres(rows: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return (rng.random((rows, 19)) < 0.3).astype(np.float32)


def _model(**kwargs) -> TwoTowerModel:
    kwargs.setdefault("generator", torch.Generator().manual_seed(0))
    return TwoTowerModel(6, 10, 8, **kwargs)


def test_tower_output_is_unit_norm():
    tower = Tower(10, 8, 16, normalize=True, generator=torch.Generator().manual_seed(0))
    out = tower(torch.arange(10))
    assert out.shape == (10, 8)
    assert torch.allclose(out.norm(dim=1), torch.ones(10), atol=1e-4)


def test_tower_rejects_wrong_feature_width():
    tower = Tower(10, 8, 16, feature_dim=19)
    with pytest.raises(ValueError):
        tower(torch.arange(3))                     # features missing
    with pytest.raises(ValueError):
        tower(torch.arange(3), torch.zeros(3, 5))


def test_tower_widths_follow_configured_features():
    with_both = _model(item_genres=_genres(10), user_genres=_genres(6))
    assert with_both.item_tower.input_dim == 8 + 19
    assert with_both.user_tower.input_dim == 8 + 19
    assert with_both.item_tower.hidden.out_features == 8 + 19 + 16

    bare = _model()
    assert bare.item_tower.input_dim == 8
    assert bare.user_forward(torch.arange(6)).shape == (6, 8)
    assert bare.item_forward(torch.arange(10)).shape == (10, 8)


def test_l2_normalize_rows_eps():
    x = torch.tensor([[3.0, 4.0], [0.0, 0.0]])
    out = l2_normalize_rows(x)
    assert torch.allclose(out[0], torch.tensor([0.6, 0.8]), atol=1e-5)
    assert torch.equal(out[1], torch.zeros(2))


def test_set_features_is_idempotent():
    model = _model(item_genres=_genres(10), user_genres=_genres(6)).eval()
    users, items = torch.arange(6), torch.arange(6)

    model.set_features(item_genres=_genres(10), user_genres=_genres(6))
    first = model(users, items)
    model.set_features(item_genres=_genres(10), user_genres=_genres(6))
    second = model(users, items)
    assert torch.equal(first, second)


def test_set_features_rejects_width_change():
    model = _model(item_genres=_genres(10))
    with pytest.raises(ValueError):
        model.set_features(item_genres=np.ones((10, 5), dtype=np.float32))
    with pytest.raises(ValueError):
        model.set_features(item_genres=np.ones((9, 19), dtype=np.float32))


def test_set_features_accepts_flat_arrays():
    genres = _genres(10)
    model = _model(item_genres=genres.reshape(-1))
    assert model.item_genre_matrix.shape == (10, 19)


def test_item_cache_is_invalidated():
    model = _model(item_genres=_genres(10))
    cached = model.materialize_item_embeddings(chunk_size=3)
    assert cached.shape == (10, 8)
    assert model.materialize_item_embeddings() is cached

    model.set_features(item_genres=_genres(10, seed=1))
    assert model.materialize_item_embeddings() is not cached


def test_chunked_materialisation_matches_full_pass():
    model = _model(item_genres=_genres(10)).eval()
    chunked = model.materialize_item_embeddings(chunk_size=3)
    with torch.no_grad():
        full = model.item_forward(torch.arange(10))
    assert torch.allclose(chunked, full, atol=1e-6)


def test_negatives_never_equal_positives():
    model = _model(loss_type="bpr")
    pos = torch.randint(0, 10, (5000,), generator=torch.Generator().manual_seed(3))
    neg = model.sample_negatives(pos)
    assert not (neg == pos).any()
    assert int(neg.min()) >= 0 and int(neg.max()) < 10


def test_negatives_with_two_items_fall_back_to_shift():
    model = TwoTowerModel(2, 2, 4, loss_type="bpr", generator=torch.Generator().manual_seed(0))
    pos = torch.zeros(200, dtype=torch.long)
    neg = model.sample_negatives(pos, max_retries=0)
    assert torch.equal(neg, torch.ones(200, dtype=torch.long))


@pytest.mark.parametrize("loss_type", ["softmax", "bpr"])
def test_train_step_reduces_loss_and_clears_cache(loss_type):
    model = _model(loss_type=loss_type, item_genres=_genres(10), user_genres=_genres(6), l2=0.0)
    optimizer = torch.optim.Adam(model.parameters(), lr=0.05)
    users = torch.arange(6)
    items = torch.tensor([0, 2, 4, 6, 8, 1])

    model.materialize_item_embeddings()
    losses = [model.train_step(users, items, optimizer) for _ in range(40)]
    assert model._item_cache is None
    if loss_type == "softmax":
        assert losses[-1] < losses[0]
    assert all(np.isfinite(losses))


def test_train_step_refuses_non_finite_loss():
    model = _model()
    optimizer = torch.optim.Adam(model.parameters(), lr=0.01)
    with torch.no_grad():
        model.user_tower.embedding.weight.fill_(float("nan"))
    before = model.item_tower.out.weight.detach().clone()
    with pytest.raises(NumericalInstabilityError):
        model.train_step(torch.arange(3), torch.arange(3), optimizer)
    assert torch.equal(model.item_tower.out.weight, before)


def test_top_k_for_user_matches_dense_scores():
    model = _model(item_genres=_genres(10)).eval()
    idx, scores = model.top_k_for_user(2, 4)
    all_scores = model.score_all_items(2)
    assert idx.shape == (4,)
    assert torch.allclose(scores, all_scores[idx])
    assert torch.all(scores[:-1] >= scores[1:])


def test_retrain_with_new_dimension():
    first = _model(item_genres=_genres(10))
    first(torch.arange(3), torch.arange(3))
    del first
    second = TwoTowerModel(6, 10, 24, item_genres=_genres(10))
    out = second.user_forward(torch.arange(6))
    assert out.shape == (6, 24)
    assert second.materialize_item_embeddings().shape == (10, 24)


def test_unknown_loss_type():
    with pytest.raises(ValueError):
        _model(loss_type="hinge")


def test_seeded_initialisation_is_reproducible_and_xavier_bounded():
    a = Tower(10, 8, 16, feature_dim=19, generator=torch.Generator().manual_seed(5))
    b = Tower(10, 8, 16, feature_dim=19, generator=torch.Generator().manual_seed(5))
    for pa, pb in zip(a.parameters(), b.parameters()):
        assert torch.equal(pa, pb)

    bound = (6.0 / (a.hidden.in_features + a.hidden.out_features)) ** 0.5
    assert float(a.hidden.weight.abs().max()) <= bound
    assert float(a.hidden.bias.abs().sum()) == 0.0
    assert 0.02 < float(a.embedding.weight.std()) < 0.08
