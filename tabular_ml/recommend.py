"""
Top-N Recommendation Module

Scores every candidate id in a catalog against one anchor id with a fitted
pipeline and returns the best matches, e.g. the products most often bought
together with a given product.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Mapping, NamedTuple, Optional, Tuple

import numpy as np

from . import config

logger = logging.getLogger(__name__)


class Match(NamedTuple):
    candidate_id: int
    score: float


def _score_range(fitted, candidates: np.ndarray, base: Dict, candidate_column: str,
                 score_column: str) -> List[Tuple[int, float]]:
    # One engine per worker; engines are not shared across threads
    engine = fitted.create_engine()
    row = dict(base)
    scored = []
    for candidate in candidates:
        row[candidate_column] = int(candidate)
        score = engine.predict(row)[score_column]
        scored.append((int(candidate), float(score)))
    return scored


def top_n_matches(fitted, anchor_id: int, catalog_size: int,
                  top_n: int = config.RECOMMEND_CONFIG["top_n"],
                  anchor_column: str = "ProductID",
                  candidate_column: str = "CombinedProductID",
                  score_column: str = config.RECOMMEND_CONFIG["score_column"],
                  base_row: Optional[Mapping] = None,
                  n_jobs: int = config.RECOMMEND_CONFIG["n_jobs"]) -> List[Match]:
    """
    Score candidates 1..catalog_size against ``anchor_id`` and keep the best.

    Matches are ordered by score descending, ties by candidate id ascending.
    When ``top_n`` exceeds the catalog, every candidate is returned.

    Args:
        fitted: FittedPipeline with a trained model
        anchor_id: Fixed value for ``anchor_column``
        catalog_size: Number of candidate ids (M); candidates are 1..M
        top_n: Number of matches to return (N)
        anchor_column: Input column holding the anchor id
        candidate_column: Input column holding the candidate id
        score_column: Prediction column to rank by
        base_row: Values for any other input columns
        n_jobs: Worker threads; the candidate range is split between them

    Returns:
        List of Match(candidate_id, score), at most ``top_n`` long

    Example:
        >>> top_n_matches(fitted, anchor_id=3, catalog_size=262111, top_n=5)
        [Match(candidate_id=63, score=0.58), ...]
    """
    if top_n < 1:
        raise ValueError(f"top_n must be >= 1, got {top_n}")
    if catalog_size < 1:
        raise ValueError(f"catalog_size must be >= 1, got {catalog_size}")

    base = dict(base_row or {})
    base[anchor_column] = anchor_id
    candidates = np.arange(1, catalog_size + 1, dtype=np.int64)

    n_parts = max(1, min(n_jobs, catalog_size))
    if n_parts == 1:
        scored = _score_range(fitted, candidates, base, candidate_column, score_column)
    else:
        parts = np.array_split(candidates, n_parts)
        with ThreadPoolExecutor(max_workers=n_parts) as executor:
            futures = [executor.submit(_score_range, fitted, part, base, candidate_column, score_column)
                       for part in parts]
            scored = [pair for future in futures for pair in future.result()]

    # NaN scores rank last
    scored.sort(key=lambda pair: (np.inf if np.isnan(pair[1]) else -pair[1], pair[0]))
    matches = [Match(candidate, score) for candidate, score in scored[:top_n]]
    logger.info(f"Scored {catalog_size} candidates for {anchor_column}={anchor_id}; "
                f"best: {matches[0].candidate_id} ({matches[0].score:.4f})")
    return matches
