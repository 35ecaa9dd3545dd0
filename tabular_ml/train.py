"""
Model Training Module

Handles train/test splitting, k-fold assignment and timed pipeline fitting.

Splits and folds are driven by an explicit seed so that the same seed
reproduces the same partition bit-for-bit.
"""

import logging
import time
from typing import List, Optional, Tuple

import numpy as np

from . import config
from .dataset import Dataset

logger = logging.getLogger(__name__)


def train_test_split(dataset: Dataset,
                     test_fraction: float = config.TRAINING_CONFIG["test_size"],
                     seed: int = config.TRAINING_CONFIG["random_state"]) -> Tuple[Dataset, Dataset]:
    """
    Split a dataset into train and test sets.

    Exactly round(n * test_fraction) rows go to the test set, chosen by a
    seeded permutation. Both outputs keep the original relative row order,
    are disjoint, and together contain every input row once.

    Args:
        dataset: Dataset to split
        test_fraction: Proportion of rows to use for testing, in [0, 1]
        seed: Random seed for reproducibility

    Returns:
        Tuple of (train, test)

    Example:
        >>> train, test = train_test_split(data, test_fraction=0.2, seed=1)
        >>> len(train), len(test)
        (80, 20)
    """
    if not 0.0 <= test_fraction <= 1.0:
        raise ValueError(f"test_fraction must be within [0, 1], got {test_fraction}")

    n_rows = len(dataset)
    n_test = int(np.floor(n_rows * test_fraction + 0.5))

    permutation = np.random.default_rng(seed).permutation(n_rows)
    is_test = np.zeros(n_rows, dtype=bool)
    is_test[permutation[:n_test]] = True

    train = dataset.take(np.flatnonzero(~is_test))
    test = dataset.take(np.flatnonzero(is_test))
    return train, test


def assign_folds(n_rows: int, folds: int,
                 seed: int = config.TRAINING_CONFIG["random_state"]) -> np.ndarray:
    """
    Assign every row to one of ``folds`` folds.

    Fold sizes differ by at most one row.

    Returns:
        Array of length n_rows with the 0-based fold index of each row
    """
    if folds < 2:
        raise ValueError(f"Cross-validation needs at least 2 folds, got {folds}")
    if folds > n_rows:
        raise ValueError(f"Cannot make {folds} folds from {n_rows} rows")

    permutation = np.random.default_rng(seed).permutation(n_rows)
    assignment = np.empty(n_rows, dtype=np.int64)
    assignment[permutation] = np.arange(n_rows) % folds
    return assignment


def fold_indices(n_rows: int, folds: int,
                 seed: int = config.TRAINING_CONFIG["random_state"]) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    (train_indices, test_indices) per fold, each in ascending row order.
    """
    assignment = assign_folds(n_rows, folds, seed)
    return [(np.flatnonzero(assignment != k), np.flatnonzero(assignment == k)) for k in range(folds)]


def train_pipeline(pipeline, train: Dataset, label_column: Optional[str] = None):
    """
    Fit ``pipeline`` on ``train`` and log timing.

    Args:
        pipeline: Unfitted Pipeline
        train: Training dataset
        label_column: Label column name (None for clustering)

    Returns:
        FittedPipeline
    """
    logger.info(f"Training on {len(train)} rows "
                f"({len(pipeline.transforms)} transform stage(s), trainer={pipeline.trainer!r})")
    start_time = time.perf_counter()
    fitted = pipeline.fit(train, label_column)
    logger.info(f"Training completed in {time.perf_counter() - start_time:.2f}s")
    return fitted
