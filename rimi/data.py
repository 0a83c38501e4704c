# rimi/data.py

import logging
from dataclasses import dataclass
import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import MinMaxScaler
from .errors import DatasetError, InsufficientInputsError, InsufficientSamplesError

logger = logging.getLogger(__name__)

PARTITION_RATIO = 0.75
DECIMALS = 4


@dataclass(frozen=True)
class Partition:
    """One run's split. Both frames are scaled to [0, 1] column by column."""
    train: pd.DataFrame
    test: pd.DataFrame
    train_index: np.ndarray

    def train_inputs(self) -> np.ndarray:
        return self.train.iloc[:, :-1].to_numpy(dtype=np.float64)

    def train_targets(self) -> np.ndarray:
        return self.train.iloc[:, -1].to_numpy(dtype=np.float64)

    def test_inputs(self) -> np.ndarray:
        return self.test.iloc[:, :-1].to_numpy(dtype=np.float64)

    def test_targets(self) -> np.ndarray:
        return self.test.iloc[:, -1].to_numpy(dtype=np.float64)


def load_dataset(path) -> pd.DataFrame:
    """Reads a CSV with a header row and validates it."""
    try:
        frame = pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DatasetError(f"Could not read dataset {path}: {e}") from e
    return validate_dataset(frame)


def validate_dataset(frame: pd.DataFrame) -> pd.DataFrame:
    """
    Checks that the last column is the output, at least two inputs precede it,
    every column is numeric and every name is non-empty and distinct.
    """
    if not isinstance(frame, pd.DataFrame):
        frame = pd.DataFrame(frame)
    names = [str(c) for c in frame.columns]
    if frame.shape[1] - 1 < 2:
        raise InsufficientInputsError(
            f"Need at least 2 inputs and 1 output column, got {frame.shape[1]} column(s)"
        )
    if any(not name.strip() for name in names):
        raise DatasetError(f"Column names must be non-empty: {names}")
    if len(set(names)) != len(names):
        raise DatasetError(f"Column names must be distinct: {names}")
    non_numeric = [c for c in frame.columns if not pd.api.types.is_numeric_dtype(frame[c])]
    if non_numeric:
        raise DatasetError(f"All columns must be numeric, found non-numeric: {non_numeric}")
    if frame.isna().any().any():
        raise DatasetError("Dataset contains missing values")
    frame = frame.copy()
    frame.columns = names
    return frame


def normalize_01(frame: pd.DataFrame, decimals: int = DECIMALS) -> pd.DataFrame:
    """Min-max scales each column to [0, 1]; constant columns become 0."""
    scaled = MinMaxScaler(feature_range=(0, 1)).fit_transform(frame.to_numpy(dtype=np.float64))
    if decimals is not None:
        scaled = np.round(scaled, decimals)
    return pd.DataFrame(scaled, columns=frame.columns, index=frame.index)


def split_dataset(frame: pd.DataFrame,
                  ratio: float = PARTITION_RATIO,
                  rng: np.random.Generator = None,
                  decimals: int = DECIMALS) -> Partition:
    """
    Samples floor(ratio * rows) training rows without replacement; the rest is
    the test partition. Each partition is normalized on its own ranges.
    """
    if not 0 < ratio < 1:
        raise ValueError(f"ratio must be in (0, 1), got {ratio}")
    if rng is None:
        rng = np.random.default_rng()
    n_rows = len(frame)
    n_train = int(np.floor(ratio * n_rows))
    if n_train < 2 or n_rows - n_train < 2:
        raise InsufficientSamplesError(
            f"A {ratio:.2f} split of {n_rows} rows leaves {n_train} train and "
            f"{n_rows - n_train} test rows; both need at least 2"
        )
    train_index, test_index = train_test_split(
        np.arange(n_rows),
        train_size=n_train,
        random_state=int(rng.integers(0, 2**32 - 1)),
    )
    train_index = np.sort(train_index)
    test_index = np.sort(test_index)
    train = normalize_01(frame.iloc[train_index].reset_index(drop=True), decimals)
    test = normalize_01(frame.iloc[test_index].reset_index(drop=True), decimals)
    logger.debug(f"Split {n_rows} rows into {len(train)} train / {len(test)} test")
    return Partition(train=train, test=test, train_index=train_index)
