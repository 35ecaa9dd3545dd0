"""
Tutorial Scenarios

Ready-made pipelines for the classic tabular tutorials. Each builder takes
a RunConfig and returns a Scenario(schema, pipeline, label_column, metrics):

- car_price: regression on used car listings (Ols)
- spam: binary spam/ham classification of SMS text (logistic regression)
- iris: k-means clustering of iris flowers
- digits: multiclass recognition of 8x8 digit images (maximum entropy)
- titanic: passenger survival (gradient boosted trees)
- bike_rental: hourly bike rental demand (random forest)
- house_price: house value from binned location and income (Ols)
- product_recommendation: co-purchase scoring (one-class matrix factorization)
- movie_recommendation: movie rating prediction (matrix factorization)

LOADER_OPTIONS holds the file layout (header, delimiter) of each dataset.
"""

from typing import Callable, Dict, NamedTuple, Optional

import numpy as np

from . import config
from .config import RunConfig
from .feature_engineering import (
    Concatenate,
    ConvertType,
    CustomMapping,
    FeaturizeText,
    MapValueToKey,
    NormalizeBinning,
    NormalizeMeanVariance,
    OneHotEncoding,
    ReplaceMissingValues,
)
from .model import (
    FastForestRegressionTrainer,
    FastTreeBinaryTrainer,
    KMeansTrainer,
    LogisticRegressionTrainer,
    MatrixFactorizationTrainer,
    MaximumEntropyTrainer,
    OlsTrainer,
)
from .pipeline import Pipeline
from .schema import Column, Schema


class Scenario(NamedTuple):
    schema: Schema
    pipeline: Pipeline
    label_column: Optional[str]
    metrics: str


# ----------------------------------------------------------------------------
# Car price (regression)
# ----------------------------------------------------------------------------

CAR_SCHEMA = Schema([
    ("Label", "float"),     # price
    ("Year", "float"),
    ("Mileage", "float"),
    ("City", "str"),
    ("State", "str"),
    ("Vin", "str"),
    ("Make", "str"),
    ("Model", "str"),
])


def car_price(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(CAR_SCHEMA, [
        OneHotEncoding("Make"),
        OneHotEncoding("Model"),
        ConvertType("Year", kind="float"),
        ConvertType("Mileage", kind="float"),
        Concatenate("Features", "Year", "Mileage", "Make", "Model"),
    ], OlsTrainer())
    return Scenario(CAR_SCHEMA, pipeline, "Label", "regression")


# ----------------------------------------------------------------------------
# Spam detection (binary)
# ----------------------------------------------------------------------------

SPAM_SCHEMA = Schema([("Verdict", "str"), ("Message", "str")])


def spam_label(row):
    """'spam' (any case) -> True, anything else -> False."""
    return {"Label": row["Verdict"].strip().lower() == "spam"}


def spam(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(SPAM_SCHEMA, [
        CustomMapping(spam_label, ["Verdict"], [Column("Label", "bool")]),
        FeaturizeText("Features", "Message"),
    ], LogisticRegressionTrainer(run_config=run_config))
    return Scenario(SPAM_SCHEMA, pipeline, "Label", "binary")


# ----------------------------------------------------------------------------
# Iris flowers (clustering)
# ----------------------------------------------------------------------------

IRIS_SCHEMA = Schema([
    ("SepalLength", "float"),
    ("SepalWidth", "float"),
    ("PetalLength", "float"),
    ("PetalWidth", "float"),
    ("Label", "str"),
])


def iris(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(IRIS_SCHEMA, [
        Concatenate("Features", "SepalLength", "SepalWidth", "PetalLength", "PetalWidth"),
    ], KMeansTrainer(n_clusters=3, run_config=run_config))
    # The species label is only used to score the clusters
    return Scenario(IRIS_SCHEMA, pipeline, "Label", "clustering")


# ----------------------------------------------------------------------------
# Digit recognition (multiclass)
# ----------------------------------------------------------------------------

DIGITS_SCHEMA = Schema([
    Column("PixelValues", "float", 64),
    Column("Label", "int"),
])


def digits(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(DIGITS_SCHEMA, [
        MapValueToKey("Label", ordinality="value"),
        Concatenate("Features", "PixelValues"),
    ], MaximumEntropyTrainer(run_config=run_config))
    return Scenario(DIGITS_SCHEMA, pipeline, "Label", "multiclass")


# ----------------------------------------------------------------------------
# Titanic survival (binary)
# ----------------------------------------------------------------------------

TITANIC_SCHEMA = Schema([
    ("PassengerId", "float"),
    ("Label", "bool"),      # survived
    ("Pclass", "float"),
    ("Name", "str"),
    ("Sex", "str"),
    ("RawAge", "str"),      # empty when unknown
    ("SibSp", "float"),
    ("Parch", "float"),
    ("Ticket", "str"),
    ("Fare", "float"),
    ("Cabin", "str"),
    ("Embarked", "str"),
])


def titanic(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(TITANIC_SCHEMA, [
        ConvertType("Age", kind="float", input_column="RawAge"),
        ReplaceMissingValues("Age", mode="mean"),
        OneHotEncoding("Sex"),
        OneHotEncoding("Embarked"),
        Concatenate("Features", "Age", "Pclass", "SibSp", "Parch", "Sex", "Embarked"),
    ], FastTreeBinaryTrainer(run_config=run_config))
    return Scenario(TITANIC_SCHEMA, pipeline, "Label", "binary")


# ----------------------------------------------------------------------------
# Bike rental demand (regression)
# ----------------------------------------------------------------------------

BIKE_FEATURES = ("Season", "Year", "Month", "Hour", "Holiday", "Weekday", "WorkingDay", "Weather",
                 "Temperature", "NormalizedTemperature", "Humidity", "Windspeed")

BIKE_SCHEMA = Schema(
    [("Instant", "float"), ("Date", "str")]
    + [(name, "float") for name in BIKE_FEATURES]
    + [("Casual", "float"), ("Registered", "float"), ("Label", "float")]    # Label: rental count
)


def bike_rental(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(BIKE_SCHEMA, [
        Concatenate("Features", *BIKE_FEATURES),
        NormalizeMeanVariance("Features"),
    ], FastForestRegressionTrainer(n_trees=100, n_leaves=20, min_examples_per_leaf=10, run_config=run_config))
    return Scenario(BIKE_SCHEMA, pipeline, "Label", "regression")


# ----------------------------------------------------------------------------
# House prices (regression on binned location)
# ----------------------------------------------------------------------------

HOUSING_SCHEMA = Schema([
    ("Longitude", "float"),
    ("Latitude", "float"),
    ("HousingMedianAge", "float"),
    ("TotalRooms", "float"),
    ("TotalBedrooms", "float"),
    ("Population", "float"),
    ("Households", "float"),
    ("MedianIncome", "float"),
    ("MedianHouseValue", "float"),
])

# Capped listings sit at this value; drop them with filter_by_column before fitting
HOUSE_VALUE_CAP = 500000.0


def house_value_in_thousands(row):
    return {"NormalizedMedianHouseValue": row["MedianHouseValue"] / 1000.0}


def location_grid(row):
    """Cross the one-hot longitude and latitude bins into one grid-cell indicator vector."""
    return {"Location": np.outer(row["EncodedLongitude"], row["EncodedLatitude"]).ravel()}


def house_price(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(HOUSING_SCHEMA, [
        CustomMapping(house_value_in_thousands, ["MedianHouseValue"], [Column("NormalizedMedianHouseValue", "float")]),
        NormalizeBinning("BinnedLongitude", "Longitude", n_bins=10),
        NormalizeBinning("BinnedLatitude", "Latitude", n_bins=10),
        OneHotEncoding("EncodedLongitude", "BinnedLongitude"),
        OneHotEncoding("EncodedLatitude", "BinnedLatitude"),
        CustomMapping(location_grid, ["EncodedLongitude", "EncodedLatitude"], [Column("Location", "float", 0)]),
        Concatenate("Features", "Location", "MedianIncome"),
    ], OlsTrainer())
    return Scenario(HOUSING_SCHEMA, pipeline, "NormalizedMedianHouseValue", "regression")


# ----------------------------------------------------------------------------
# Product recommendation (matrix factorization)
# ----------------------------------------------------------------------------

PRODUCT_SCHEMA = Schema([("ProductID", "float"), ("CombinedProductID", "float")])


def co_purchased(row):
    """Every observed product pair is a positive example."""
    return {"Label": 1.0}


def product_recommendation(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(PRODUCT_SCHEMA, [
        CustomMapping(co_purchased, ["ProductID"], [Column("Label", "float")]),
        MapValueToKey("ProductIDEncoded", "ProductID"),
        MapValueToKey("CombinedProductIDEncoded", "CombinedProductID"),
    ], MatrixFactorizationTrainer(
        row_column="CombinedProductIDEncoded",
        column_column="ProductIDEncoded",
        n_factors=config.MF_CONFIG["n_factors"],
        regularization=config.MF_CONFIG["regularization"],
        one_class=True,
        run_config=run_config,
    ))
    return Scenario(PRODUCT_SCHEMA, pipeline, "Label", "regression")


# ----------------------------------------------------------------------------
# Movie recommendation (matrix factorization on ratings)
# ----------------------------------------------------------------------------

MOVIE_SCHEMA = Schema([("UserID", "float"), ("MovieID", "float"), ("Label", "float")])


def movie_recommendation(run_config: Optional[RunConfig] = None) -> Scenario:
    pipeline = Pipeline(MOVIE_SCHEMA, [
        MapValueToKey("UserIDEncoded", "UserID"),
        MapValueToKey("MovieIDEncoded", "MovieID"),
    ], MatrixFactorizationTrainer(
        row_column="MovieIDEncoded",
        column_column="UserIDEncoded",
        n_factors=100,
        regularization=config.MF_CONFIG["regularization"],
        run_config=run_config,
    ))
    return Scenario(MOVIE_SCHEMA, pipeline, "Label", "regression")


SCENARIOS: Dict[str, Callable[[Optional[RunConfig]], Scenario]] = {
    "car_price": car_price,
    "spam": spam,
    "iris": iris,
    "digits": digits,
    "titanic": titanic,
    "bike_rental": bike_rental,
    "house_price": house_price,
    "product_recommendation": product_recommendation,
    "movie_recommendation": movie_recommendation,
}

LOADER_OPTIONS: Dict[str, Dict] = {
    "car_price": {"has_header": True, "delimiter": ","},
    "spam": {"has_header": True, "delimiter": "\t", "allow_quoting": False},
    "iris": {"has_header": False, "delimiter": ","},
    "digits": {"has_header": True, "delimiter": ","},
    "titanic": {"has_header": True, "delimiter": ",", "allow_quoting": True},
    "bike_rental": {"has_header": True, "delimiter": ","},
    "house_price": {"has_header": True, "delimiter": ","},
    "product_recommendation": {"has_header": True, "delimiter": "\t"},
    "movie_recommendation": {"has_header": True, "delimiter": ","},
}


def get_scenario(name: str, run_config: Optional[RunConfig] = None) -> Scenario:
    """
    Build a scenario by name.

    Example:
        >>> schema, pipeline, label_column, metrics = get_scenario("car_price")
    """
    try:
        builder = SCENARIOS[name]
    except KeyError:
        raise ValueError(f"Unknown scenario: {name}. Must be one of {sorted(SCENARIOS)}") from None
    return builder(run_config or RunConfig())
