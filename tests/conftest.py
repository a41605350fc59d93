from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from activity_common import CLASS_LABELS, NA_MARKERS, normalize_column_names

SUBJECTS = ["adelmo", "carlitos", "charles", "eurico", "jeremy", "pedro"]


def make_raw_training(n_per_class: int = 40, seed: int = 0) -> pd.DataFrame:
    """Text-valued table shaped like the public weight-lifting training file."""
    rng = np.random.default_rng(seed)
    n = n_per_class * len(CLASS_LABELS)
    labels = np.repeat(CLASS_LABELS, n_per_class)
    shift = np.repeat(np.arange(len(CLASS_LABELS), dtype=float), n_per_class)

    roll = shift * 3.0 + rng.normal(0, 1.0, n)
    pitch = -shift * 2.0 + rng.normal(0, 1.0, n)
    yaw = rng.normal(0, 5.0, n)
    gyro = rng.normal(0, 1.0, n)
    kurtosis = np.full(n, "", dtype=object)
    kurtosis[:2] = ["1.25", "#DIV/0!"]
    new_window = np.where(np.arange(n) % 50 == 0, "yes", "no")

    df = pd.DataFrame(
        {
            "": np.arange(1, n + 1).astype(str),
            "user_name": rng.choice(SUBJECTS, n),
            "raw_timestamp_part_1": (1322489729 + np.arange(n)).astype(str),
            "raw_timestamp_part_2": rng.integers(1000, 999999, n).astype(str),
            "cvtd_timestamp": ["05/12/2011 11:23"] * n,
            "new_window": new_window,
            "num_window": (np.arange(n) // 10 + 1).astype(str),
            "roll_belt": np.round(roll, 4).astype(str),
            "pitch_belt": np.round(pitch, 4).astype(str),
            "yaw_belt": np.round(yaw, 4).astype(str),
            "gyros_belt_x": np.round(gyro, 4).astype(str),
            "total_accel_belt": np.round(roll * 2.0 + rng.normal(0, 0.05, n), 4).astype(str),
            "kurtosis_roll_belt": kurtosis,
            "classe": labels,
        }
    )
    order = rng.permutation(n)
    return df.iloc[order].reset_index(drop=True)


def make_raw_scoring(n: int = 20, seed: int = 1) -> pd.DataFrame:
    train = make_raw_training(n_per_class=4, seed=seed).head(n).copy()
    train = train.drop(columns=["classe"])
    train["problem_id"] = np.arange(1, len(train) + 1).astype(str)
    return train.reset_index(drop=True)


def make_numeric_frame(n_per_class: int = 30, n_features: int = 6, seed: int = 0) -> tuple[pd.DataFrame, pd.Series]:
    rng = np.random.default_rng(seed)
    n = n_per_class * len(CLASS_LABELS)
    y = pd.Series(np.repeat(CLASS_LABELS, n_per_class), name="classe")
    shift = np.repeat(np.arange(len(CLASS_LABELS), dtype=float), n_per_class)
    data = {}
    for i in range(n_features):
        signal = shift * (1.0 if i % 2 == 0 else 0.3)
        data[f"f{i}"] = signal + rng.normal(0, 1.0, n)
    return pd.DataFrame(data), y


def as_loaded(df: pd.DataFrame) -> pd.DataFrame:
    """Mimic load_raw_table on an in-memory frame."""
    out = df.replace({marker: np.nan for marker in NA_MARKERS})
    out.columns = normalize_column_names(list(df.columns))
    return out


@pytest.fixture
def raw_training() -> pd.DataFrame:
    return as_loaded(make_raw_training())


@pytest.fixture
def raw_scoring() -> pd.DataFrame:
    return as_loaded(make_raw_scoring())


@pytest.fixture
def training_csv(tmp_path: Path) -> Path:
    path = tmp_path / "pml-training.csv"
    make_raw_training().to_csv(path, index=False)
    return path


@pytest.fixture
def scoring_csv(tmp_path: Path) -> Path:
    path = tmp_path / "pml-testing.csv"
    make_raw_scoring().to_csv(path, index=False)
    return path
