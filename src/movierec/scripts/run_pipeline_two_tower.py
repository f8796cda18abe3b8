import asyncio

from movierec.data.store import RatingStore
from movierec.engine.session import RecommenderSession
from movierec.utils.config import TrainingConfig
from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)


async def _train(session: RecommenderSession, config: TrainingConfig) -> None:
    async for _ in session.train_model(config):
        pass


def run_pipeline_two_tower(
    store: RatingStore,
    *,
    eval_K: int = 10,
    eval_n_neg: int = 99,
    top_k: int = 10,
    seed: int = 42,
    **config_kwargs,
):
    """
    Full two-tower pipeline:
    1. Builds positive pairs and genre features from the store
    2. Trains the towers (in-batch softmax or BPR, see `loss_type`)
    3. Evaluates on the held-out positives
    4. Logs the learned top-K next to the historical and genre baselines
    Returns the session and the validation metrics.
    """
    config = TrainingConfig(architecture="two_tower", seed=seed, **config_kwargs)
    session = RecommenderSession()
    session.load_store(store)

    asyncio.run(_train(session, config))

    metrics = {"val_loss": session.trainer.history[-1].val_loss}
    metrics.update(session.evaluate(K=eval_K, n_neg=eval_n_neg, seed=seed, progress=True))

    logger.info("Validation set Evaluation:")
    for k, v in metrics.items():
        logger.info(f"  {k}: {v:.4f}")

    # --- compare against the non-learned baselines ------------------------
    user = session.pick_user()
    logger.info(f"Historical top {top_k}:")
    for row in session.historical_top(top_k).itertuples(index=False):
        logger.info(f"  {row.title} | mean {row.mean_rating:.2f} over {row.count} ratings")

    logger.info(f"Genre baseline for user {user}:")
    for rec in session.content_recommendations(user, top_k):
        logger.info(f"  {rec.rank:>2}. {rec.title} | cosine {rec.score:.3f}")

    logger.info(f"Two-tower top {top_k} for user {user}:")
    for rec in session.recommend(user, top_k):
        logger.info(f"  {rec.rank:>2}. {rec.title} ({', '.join(rec.genres)}) | score {rec.score:.3f}")

    return session, metrics
