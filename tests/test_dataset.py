"""
Tests for tabular_ml.dataset module
------------------------------------
Covers:
- Row immutability
- Dataset construction, access and derivation
- Conversion of values to their column kind
- filter_rows() / filter_by_column()
"""

import numpy as np
import pandas as pd
import pytest

from tabular_ml.dataset import Dataset, Row, filter_by_column, filter_rows
from tabular_ml.errors import SchemaError
from tabular_ml.schema import Column, Schema


@pytest.fixture
def vector_schema():
    return Schema([Column("Id", "int"), Column("Values", "float", 2)])


# -------------------------------------------------------------------
# Row
# -------------------------------------------------------------------

class TestRow:
    """Rows are read-only snapshots."""

    def test_row_cannot_be_assigned(self):
        """Rows reject item assignment."""
        row = Row({"Year": 2018.0})
        with pytest.raises(TypeError):
            row["Year"] = 2019.0

    def test_vector_values_are_read_only(self):
        """Vector cells are frozen arrays."""
        row = Row({"Values": [1.0, 2.0]})
        with pytest.raises(ValueError):
            row["Values"][0] = 5.0

    def test_equality_handles_nan_and_vectors(self):
        """NaN equals NaN and vectors compare element-wise."""
        assert Row({"A": float("nan"), "B": np.array([1.0])}) == {"A": float("nan"), "B": [1.0]}
        assert Row({"A": 1.0}) != Row({"A": 2.0})


# -------------------------------------------------------------------
# Dataset
# -------------------------------------------------------------------

class TestDataset:
    """Construction, access and derivation."""

    def test_from_rows_fills_missing_keys(self, car_schema):
        """Absent keys get the column's missing value."""
        data = Dataset.from_rows([{"Year": 2018.0, "Make": "BMW"}], car_schema)
        row = data.row(0)
        assert np.isnan(row["Label"])
        assert row["Make"] == "BMW"

    def test_iteration_yields_rows_in_order(self, car_dataset, car_frame):
        """Iteration follows frame order."""
        years = [row["Year"] for row in car_dataset]
        assert years == car_frame["Year"].tolist()

    def test_frame_missing_schema_column(self, car_frame, car_schema):
        """A frame without a schema column is rejected."""
        with pytest.raises(SchemaError):
            Dataset(car_frame.drop(columns=["Make"]), car_schema)

    def test_take_preserves_requested_order(self, car_dataset, car_frame):
        """take() returns rows in the order asked for."""
        subset = car_dataset.take([5, 1, 3])
        assert subset.column_values("Year").tolist() == car_frame["Year"].iloc[[5, 1, 3]].tolist()

    def test_head(self, car_dataset):
        """head(n) keeps the first n rows."""
        assert len(car_dataset.head(4)) == 4

    def test_with_columns_returns_new_dataset(self, car_dataset):
        """with_columns() leaves the source dataset unchanged."""
        doubled = car_dataset.with_columns([Column("Year", "float")],
                                           {"Year": car_dataset.column_values("Year") * 2})
        assert doubled.column_values("Year")[0] == car_dataset.column_values("Year")[0] * 2
        assert doubled is not car_dataset

    def test_vector_matrix(self, vector_schema):
        """Vector and numeric scalar columns stack into 2-D matrices."""
        data = Dataset.from_rows([{"Id": 1, "Values": [1.0, 2.0]}, {"Id": 2, "Values": [3.0, 4.0]}],
                                 vector_schema)
        assert data.vector_matrix("Values").shape == (2, 2)
        assert data.vector_matrix("Id").tolist() == [[1.0], [2.0]]

    def test_vector_matrix_rejects_ragged_rows(self):
        """Rows of differing vector length cannot be stacked."""
        schema = Schema([Column("Values", "float", 0)])
        data = Dataset.from_rows([{"Values": [1.0]}, {"Values": [1.0, 2.0]}], schema)
        with pytest.raises(SchemaError):
            data.vector_matrix("Values")

    def test_vector_matrix_rejects_text(self, car_dataset):
        """Text columns have no numeric matrix."""
        with pytest.raises(SchemaError):
            car_dataset.vector_matrix("Make")

    def test_lazy_loader_called_once(self, car_frame, car_schema, mocker):
        """The loader runs once however many times rows are read."""
        loader = mocker.Mock(return_value=car_frame)
        data = Dataset.lazy(loader, car_schema)
        assert not data.is_loaded

        len(data)
        list(data.head(2))
        loader.assert_called_once()


# -------------------------------------------------------------------
# Kind conversion
# -------------------------------------------------------------------

class TestKindConversion:
    """Values are stored with their column kind's dtype."""

    def test_int_in_float_column_becomes_float(self):
        """An int given for a float column is stored as 3.0, not 3."""
        data = Dataset.from_rows([{"X": 3}, {"X": 4.5}], Schema([("X", "float")]))
        assert data.frame["X"].dtype == np.float64
        assert data.row(0)["X"] == 3.0
        assert isinstance(data.row(0)["X"], float)

    def test_integral_float_in_key_column_becomes_int(self):
        """3.0 is a valid key and is stored as the integer 3."""
        data = Dataset.from_rows([{"K": 3.0}], Schema([("K", "key")]))
        assert data.frame["K"].dtype == np.int64
        assert data.row(0)["K"] == 3

    def test_nan_key_is_zero(self):
        """A missing key converts to the unknown key 0."""
        data = Dataset.from_rows([{"K": float("nan")}, {"K": None}], Schema([("K", "key")]))
        assert data.column_values("K").tolist() == [0, 0]

    def test_text_in_float_column_rejected(self):
        """Text never converts to a number."""
        with pytest.raises(SchemaError):
            Dataset.from_rows([{"X": "2018"}], Schema([("X", "float")]))

    def test_fractional_value_in_key_column_rejected(self):
        """3.7 is not silently truncated to key 3."""
        with pytest.raises(SchemaError):
            Dataset.from_rows([{"K": 3.7}], Schema([("K", "key")]))

    def test_frame_columns_converted(self, car_schema):
        """from_frame() converts integer frame columns to float columns."""
        frame = pd.DataFrame({"Label": [1, 2], "Year": [2018, 2019], "Mileage": [10, 20], "Make": ["A", "B"]})
        data = Dataset.from_frame(frame, car_schema)
        assert data.frame["Year"].dtype == np.float64
        assert data.row(1)["Year"] == 2019.0

    def test_with_columns_converts_new_columns(self, car_dataset):
        """Appended values take the declared kind."""
        out = car_dataset.with_columns([Column("Flag", "float")], {"Flag": [1] * len(car_dataset)})
        assert out.frame["Flag"].dtype == np.float64

    def test_large_keys_survive_row_access(self):
        """row() keeps integral kinds exact instead of upcasting the row to float."""
        big = 2**53 + 1
        schema = Schema([("K", "key"), ("I", "int"), ("F", "float")])
        data = Dataset.from_rows([{"K": big, "I": -big, "F": 0.5}], schema)

        row = data.row(0)
        assert row["K"] == big
        assert row["I"] == -big
        assert isinstance(row["K"], int)
        assert isinstance(row["I"], int)
        assert row["F"] == 0.5

    def test_row_agrees_with_iteration(self):
        """row(i) and the i-th iterated row are equal, value types included."""
        schema = Schema([("K", "key"), ("B", "bool"), ("S", "str"), ("F", "float")])
        data = Dataset.from_rows([{"K": 2, "B": True, "S": "x", "F": 1.5},
                                  {"K": 7, "B": False, "S": "y", "F": float("nan")}], schema)
        for index, row in enumerate(data):
            assert data.row(index) == row
            assert {k: type(v) for k, v in data.row(index).items()} == {k: type(v) for k, v in row.items()}


# -------------------------------------------------------------------
# Filtering
# -------------------------------------------------------------------

class TestFiltering:
    """Row filters keep order and schema."""

    def test_filter_rows(self, car_dataset):
        """The predicate sees every row and the schema is kept."""
        recent = filter_rows(car_dataset, lambda row: row["Year"] >= 2015)
        assert all(row["Year"] >= 2015 for row in recent)
        assert recent.schema == car_dataset.schema

    def test_filter_by_column_upper_bound_is_exclusive(self):
        """The upper bound is exclusive and NaN rows are dropped."""
        schema = Schema([("Price", "float")])
        data = Dataset.from_rows([{"Price": v} for v in (1.0, 2.0, 3.0, float("nan"), 0.5)], schema)

        kept = filter_by_column(data, "Price", upper=3.0)
        assert kept.column_values("Price").tolist() == [1.0, 2.0, 0.5]

    def test_filter_by_column_lower_bound(self):
        """The lower bound is inclusive."""
        schema = Schema([("Price", "float")])
        data = Dataset.from_rows([{"Price": v} for v in (1.0, 2.0, 3.0)], schema)
        assert filter_by_column(data, "Price", lower=2.0).column_values("Price").tolist() == [2.0, 3.0]

    def test_filter_by_text_column_rejected(self, car_dataset):
        """Only numeric columns can be range-filtered."""
        with pytest.raises(SchemaError):
            filter_by_column(car_dataset, "Make", upper=1.0)
