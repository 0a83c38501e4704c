# rimi/errors.py


class RimiError(Exception):
    """Base class for all errors raised by rimi."""


class ShapeMismatchError(RimiError, ValueError):
    """Weight matrices and the input matrix have inconsistent dimensions."""


class DatasetError(RimiError, ValueError):
    """The dataset cannot be read or is not a numeric table with distinct, non-empty names."""


class InsufficientInputsError(RimiError, ValueError):
    """The design has fewer than two input columns."""


class NotFoundError(RimiError, LookupError):
    """A pair lookup failed. This points at an indexing bug, not at user data."""


class InsufficientSamplesError(RimiError, ValueError):
    """Too few (or degenerate) rows to compute a variance or an R squared."""


class TrainingFailedError(RimiError, RuntimeError):
    """The trainer did not produce usable weights."""


class DegenerateVarianceError(RimiError, RuntimeWarning):
    """
    A term's values did not vary across runs, so its standard error is zero.
    Issued through `warnings.warn`; it never aborts a run.
    """
