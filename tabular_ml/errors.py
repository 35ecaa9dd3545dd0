"""
Error taxonomy shared by every pipeline stage.
"""


class TabularMLError(Exception):
    """Base class for all library errors."""


class FormatError(TabularMLError):
    """Malformed source data (bad field count, unparsable value, corrupt model bytes)."""


class SchemaError(TabularMLError):
    """Column or type mismatch between a declared schema and the actual data or stage."""


class FitError(TabularMLError):
    """Training failed (degenerate input, empty dataset, solver failure)."""


class NotFittedError(TabularMLError):
    """An operation that needs a fitted stage was called on an unfit one."""


class FoldError(FitError):
    """A cross-validation fold failed. ``fold`` is the 0-based fold index."""

    def __init__(self, fold: int, cause: BaseException):
        self.fold = fold
        self.cause = cause
        super().__init__(f"Cross-validation fold {fold} failed: {cause}")
