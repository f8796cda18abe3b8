import argparse

from movierec.data.download import download_movielens, find_movielens_dir
from movierec.data.store import RatingStore
from movierec.scripts.run_pipeline_mf import run_pipeline
from movierec.utils.config import load_settings


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Train the biased MF recommender on MovieLens 100K")
    ap.add_argument("--data-dir", type=str, default=None, help="Folder with u.data / u.item (default: $MOVIEREC_DATA_DIR)")
    ap.add_argument("--download", action="store_true", help="Fetch the dataset through kagglehub first")
    ap.add_argument("--epochs", type=str, default="15")
    ap.add_argument("--embedding-dim", type=str, default="16")
    ap.add_argument("--batch-size", type=str, default="2048")
    ap.add_argument("--lr", type=str, default="0.01")
    ap.add_argument("--l2", type=str, default="1e-4")
    ap.add_argument("--eval-k", type=int, default=10)
    ap.add_argument("--eval-n-neg", type=int, default=99)
    ap.add_argument("--seed", type=int, default=42)
    return ap.parse_args()


if __name__ == "__main__":
    args = parse_args()
    settings = load_settings()

    if args.download:
        data_dir = download_movielens(settings.kaggle_dataset, args.data_dir or settings.data_dir)
    else:
        data_dir = find_movielens_dir(args.data_dir or settings.data_dir)

    # numeric options stay strings: the config clamps and tolerates "0,01"
    session, results = run_pipeline(
        RatingStore.from_directory(data_dir),
        eval_K=args.eval_k,
        eval_n_neg=args.eval_n_neg,
        seed=args.seed,
        epochs=args.epochs,
        embedding_dim=args.embedding_dim,
        batch_size=args.batch_size,
        learning_rate=args.lr,
        l2_lambda=args.l2,
    )
