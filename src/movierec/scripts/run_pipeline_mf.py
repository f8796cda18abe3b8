import asyncio

from movierec.data.store import RatingStore
from movierec.engine.session import RecommenderSession
from movierec.utils.config import TrainingConfig
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


async def _train(session: RecommenderSession, config: TrainingConfig) -> None:
    async for _ in session.train_model(config):
        pass


def run_pipeline(
    store: RatingStore,
    *,
    eval_K: int = 10,
    eval_n_neg: int = 99,
    top_k: int = 10,
    seed: int = 42,
    **config_kwargs,
):
    """End-to-end run: split -> train biased MF -> evaluate -> sample recommendations.

    Parameters
    ----------
    store : RatingStore
        Parsed MovieLens ratings.
    eval_K : int, optional
        Cutoff rank for HR@K, nDCG@K and MRR@K, by default 10. Must be smaller
        than `eval_n_neg` + 1.
    eval_n_neg : int, optional
        Negatives sampled per held-out positive during evaluation, by default 99.
    top_k : int, optional
        Length of the sample recommendation list that gets logged, by default 10.
    seed : int, optional
        Seed for the split, the shuffles, parameter init and evaluation sampling.
    **config_kwargs
        Extra `TrainingConfig` fields, such as 'epochs', 'embedding_dim',
        'batch_size' and 'learning_rate'.

    Returns
    -------
    session : RecommenderSession
        Session holding the trained model.
    metrics : dict[str, float]
        Validation ranking metrics plus the final train/val RMSE.
    """
    config = TrainingConfig(architecture="mf", seed=seed, **config_kwargs)
    session = RecommenderSession()
    session.load_store(store)

    asyncio.run(_train(session, config))

    last = session.trainer.history[-1]
    metrics = {"train_rmse": last.train_rmse, "val_rmse": last.val_rmse}
    metrics.update(session.evaluate(K=eval_K, n_neg=eval_n_neg, seed=seed, progress=True))

    logger.info("Validation set Evaluation:")
    for k, v in metrics.items():
        logger.info(f"  {k}: {v:.4f}")

    user = session.pick_user()
    logger.info(f"Top {top_k} for user {user}:")
    for rec in session.recommend(user, top_k):
        e = rec.explanation
        logger.info(
            f"  {rec.rank:>2}. {rec.title} ({rec.year or '-'}) | score {rec.score:.3f} "
            f"= mu {e.mu:.2f} + bu {e.bu:+.2f} + bi {e.bi:+.2f} + dot {e.dot:+.2f}"
        )

    return session, metrics
