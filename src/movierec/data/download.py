from pathlib import Path
import shutil

import kagglehub

from movierec.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_DATASET = "prajitdatta/movielens-100k-dataset"


def find_movielens_dir(root: str | Path) -> Path:
    """Return the directory under `root` that holds `u.data`."""
    root = Path(root)
    if (root / "u.data").exists():
        return root
    for candidate in sorted(root.rglob("u.data")):
        return candidate.parent
    raise FileNotFoundError(f"No MovieLens 100K files (u.data) found under {root}")


def download_movielens(dataset: str = DEFAULT_DATASET, dst_dir: str | Path | None = None) -> Path:
    """Fetch MovieLens 100K through kagglehub and return the folder containing `u.item`/`u.data`.

    When `dst_dir` is given the downloaded tree is copied there first.
    """
    src_path = Path(kagglehub.dataset_download(dataset))
    if dst_dir is not None:
        shutil.copytree(src_path, dst_dir, dirs_exist_ok=True)
        src_path = Path(dst_dir)

    data_dir = find_movielens_dir(src_path)
    logger.info(f"Kaggle Dataset: {dataset} is available under path: {data_dir}")
    return data_dir
