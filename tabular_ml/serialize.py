"""
Model Serialization Module

Handles saving and loading fitted pipelines to/from bytes and disk.

A saved model is a pickled envelope holding the fitted pipeline and,
optionally, the schema of the data it was trained from, so a loaded model
can be fed straight from the same kind of file.
"""

import logging
import os
import pickle
from pathlib import Path
from typing import Any, Optional, Tuple, Union

from .errors import FormatError
from .schema import Schema

logger = logging.getLogger(__name__)

MODEL_FORMAT = "tabular-ml-model"
FORMAT_VERSION = 1


def save_model(fitted: Any, schema: Optional[Schema] = None) -> bytes:
    """
    Serialize a fitted pipeline (and optionally its input schema) to bytes.

    Example:
        >>> data = save_model(fitted, schema)
        >>> restored, restored_schema = load_model(data)
    """
    envelope = {
        "format": MODEL_FORMAT,
        "version": FORMAT_VERSION,
        "fitted": fitted,
        "schema": schema,
    }
    return pickle.dumps(envelope, protocol=pickle.HIGHEST_PROTOCOL)


def load_model(data: bytes) -> Tuple[Any, Optional[Schema]]:
    """
    Restore a fitted pipeline from bytes written by save_model().

    Returns:
        Tuple of (fitted pipeline, schema or None)

    Raises:
        FormatError: Truncated, corrupt or foreign data
    """
    try:
        envelope = pickle.loads(data)
    except Exception as e:
        raise FormatError(f"Cannot deserialize model: {e}") from e

    if not isinstance(envelope, dict) or envelope.get("format") != MODEL_FORMAT:
        raise FormatError("Data is not a saved tabular-ml model")
    if envelope.get("version") != FORMAT_VERSION:
        raise FormatError(f"Unsupported model format version: {envelope.get('version')}")
    return envelope["fitted"], envelope["schema"]


def save_model_file(fitted: Any, path: Union[str, Path], schema: Optional[Schema] = None) -> None:
    """
    Save a fitted pipeline to a file.

    Example:
        >>> save_model_file(fitted, "models/car_price.pkl", schema)
    """
    # Ensure directory exists
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "wb") as f:
        f.write(save_model(fitted, schema))

    logger.info(f"Model saved to: {path}")


def load_model_file(path: Union[str, Path]) -> Tuple[Any, Optional[Schema]]:
    """
    Load a fitted pipeline from a file.

    Raises:
        FileNotFoundError: If model file doesn't exist
        FormatError: If the file is not a valid saved model
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    with open(path, "rb") as f:
        result = load_model(f.read())

    logger.info(f"Model loaded from: {path}")
    return result


def get_model_size(path: Union[str, Path]) -> float:
    """
    Get size of saved model file in megabytes.

    Operationalization: File size in bytes / (1024^2)

    Example:
        >>> size_mb = get_model_size("models/car_price.pkl")
        >>> print(f"Model size: {size_mb:.2f} MB")
        Model size: 0.02 MB
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    return os.path.getsize(path) / (1024 ** 2)


def verify_model_integrity(path: Union[str, Path]) -> bool:
    """
    Verify that a saved model can be loaded successfully.

    Returns:
        True if model loads successfully, False otherwise
    """
    try:
        load_model_file(path)
        return True
    except (OSError, FormatError) as e:
        logger.warning(f"Model integrity check failed: {e}")
        return False
