"""
Configuration file for Tabular ML

Contains default hyperparameters, paths, and constants used across the pipeline.
"""

import os
from dataclasses import dataclass
from pathlib import Path

import numpy as np

# ============================================================================
# PATHS
# ============================================================================

# Base directories
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("TABULAR_ML_DATA_DIR", str(PROJECT_ROOT / "data")))
MODELS_DIR = Path(os.getenv("TABULAR_ML_MODELS_DIR", str(PROJECT_ROOT / "models")))

# Model paths
DEFAULT_MODEL_PATH = MODELS_DIR / os.getenv("TABULAR_ML_MODEL_FILE", "model.pkl")

# ============================================================================
# DATA LOADING
# ============================================================================

LOADER_CONFIG = {
    "has_header": True,
    "delimiter": ",",
    "allow_quoting": True,
}

# ============================================================================
# TRAINING CONFIGURATION
# ============================================================================

TRAINING_CONFIG = {
    "test_size": 0.2,  # Train/test split ratio
    "random_state": int(os.getenv("TABULAR_ML_SEED", "1")),  # Seed for reproducibility
}

# ============================================================================
# CROSS-VALIDATION CONFIGURATION
# ============================================================================

CV_CONFIG = {
    "n_folds": 5,
    "n_jobs": int(os.getenv("TABULAR_ML_N_JOBS", "1")),  # Worker threads for fold fits
}

# ============================================================================
# EVALUATION CONFIGURATION
# ============================================================================

EVALUATION_CONFIG = {
    "feature_column": "Features",  # Used by clustering metrics
    "binary_threshold": 0.5,
}

# ============================================================================
# RECOMMENDATION CONFIGURATION
# ============================================================================

RECOMMEND_CONFIG = {
    "top_n": 5,
    "score_column": "Score",
    "n_jobs": int(os.getenv("TABULAR_ML_N_JOBS", "1")),
}

# ============================================================================
# MATRIX FACTORIZATION HYPERPARAMETERS
# ============================================================================

MF_CONFIG = {
    "n_factors": 16,  # Number of latent factors
    "regularization": 0.025,  # Shrinkage applied to user/item biases
}


@dataclass(frozen=True)
class RunConfig:
    """Explicit run settings handed to split, cross-validation and trainers."""

    seed: int = TRAINING_CONFIG["random_state"]
    n_jobs: int = CV_CONFIG["n_jobs"]

    def rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)
