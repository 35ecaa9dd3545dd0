"""
Pytest configuration and shared fixtures

This file contains fixtures that are available to all test files.
"""

import io

import numpy as np
import pandas as pd
import pytest

from tabular_ml.dataset import Dataset
from tabular_ml.feature_engineering import Concatenate, OneHotEncoding
from tabular_ml.model import OlsTrainer
from tabular_ml.pipeline import Pipeline
from tabular_ml.schema import Schema

MAKES = ["BMW", "Audi", "Porsche"]
MAKE_PREMIUM = {"BMW": 5000.0, "Audi": 3000.0, "Porsche": 20000.0}


# ---------------------------------------------------
# Schema fixtures
# ---------------------------------------------------

@pytest.fixture
def car_schema():
    """Price label plus two numeric and one categorical feature."""
    return Schema([
        ("Label", "float"),
        ("Year", "float"),
        ("Mileage", "float"),
        ("Make", "str"),
    ])


@pytest.fixture
def binary_schema():
    return Schema([("X1", "float"), ("X2", "float"), ("Label", "bool")])


# ---------------------------------------------------
# Dataset fixtures
# ---------------------------------------------------

@pytest.fixture
def car_frame():
    """
    60 synthetic car listings. Price is an exact linear function of the
    features, so a least-squares fit recovers it.
    """
    rng = np.random.default_rng(42)
    n_rows = 60
    years = rng.integers(2005, 2021, size=n_rows).astype(float)
    mileage = rng.integers(1000, 150000, size=n_rows).astype(float)
    makes = [MAKES[i % len(MAKES)] for i in range(n_rows)]
    price = (10000.0 + 1000.0 * (years - 2005) - 0.05 * mileage
             + np.array([MAKE_PREMIUM[m] for m in makes]))
    return pd.DataFrame({"Label": price, "Year": years, "Mileage": mileage, "Make": makes})


@pytest.fixture
def car_dataset(car_frame, car_schema):
    return Dataset.from_frame(car_frame, car_schema)


@pytest.fixture
def car_pipeline(car_schema):
    """One-hot Make, concatenate, ordinary least squares."""
    return Pipeline(car_schema, [
        OneHotEncoding("Make"),
        Concatenate("Features", "Year", "Mileage", "Make"),
    ], OlsTrainer())


@pytest.fixture
def binary_dataset(binary_schema):
    """80 rows; the label is True when X1 + X2 > 0 (linearly separable with noise-free margin)."""
    rng = np.random.default_rng(7)
    x = rng.normal(size=(80, 2))
    x[:, 0] += np.sign(x[:, 0]) * 0.5
    label = (x[:, 0] + x[:, 1]) > 0
    frame = pd.DataFrame({"X1": x[:, 0], "X2": x[:, 1], "Label": label})
    return Dataset.from_frame(frame, binary_schema)


@pytest.fixture
def car_csv_text():
    """Small comma-separated file with a header row."""
    return (
        "Label,Year,Mileage,Make\n"
        "61000,2018,12500,Porsche\n"
        "18000,2012,26000,BMW\n"
        "\n"
        "9500,2009,,Audi\n"
    )


@pytest.fixture
def car_csv_stream(car_csv_text):
    return io.StringIO(car_csv_text)


# ---------------------------------------------------
# Utility fixture: temporary directory
# ---------------------------------------------------

@pytest.fixture
def tmp_output_dir(tmp_path):
    """
    Create a temporary output directory for tests that write files.
    Automatically cleaned up after test.
    """
    out_dir = tmp_path / "outputs"
    out_dir.mkdir()
    return out_dir
