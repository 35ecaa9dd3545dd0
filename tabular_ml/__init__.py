"""
Tabular ML Package

This package contains modular components for:
- Typed row schemas and datasets (delimited-text loading, filtering)
- Feature transforms (type conversion, encoding, text featurization)
- Trainers and models (regression, classification, clustering, matrix factorization)
- Pipelines (ordered transforms ending in a trainer)
- Evaluation (held-out metrics, k-fold cross-validation)
- Single-row prediction engine
- Top-N recommendation search
- Model serialization (save/load)
"""

__version__ = "1.0.0"
