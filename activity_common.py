from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, roc_auc_score
from sklearn.model_selection import train_test_split

logger = logging.getLogger(__name__)

OUTCOME_COL = "classe"
CLASS_LABELS = ["A", "B", "C", "D", "E"]
ROW_INDEX_COL = "row_index"
SUBJECT_COL = "user_name"
RAW_TS1_COL = "raw_timestamp_part_1"
RAW_TS2_COL = "raw_timestamp_part_2"
TIMESTAMP_COL = "cvtd_timestamp"
WINDOW_FLAG_COL = "new_window"
WINDOW_INDEX_COL = "num_window"

IDENTIFIER_COLS = [
    SUBJECT_COL,
    RAW_TS1_COL,
    RAW_TS2_COL,
    TIMESTAMP_COL,
    WINDOW_FLAG_COL,
    WINDOW_INDEX_COL,
]

TIMESTAMP_FORMAT = "%d/%m/%Y %H:%M"
WINDOW_FLAG_LEVELS = ["no", "yes"]
NA_MARKERS = ["", "NA", "#DIV/0!"]

DEFAULT_TRAINING_URL = "https://d396qusza40orc.cloudfront.net/predmachlearn/pml-training.csv"
DEFAULT_SCORING_URL = "https://d396qusza40orc.cloudfront.net/predmachlearn/pml-testing.csv"

NON_ALNUM_RE = re.compile(r"[^0-9a-zA-Z]+")
UNNAMED_RE = re.compile(r"^unnamed_\d+$")


class PipelineError(ValueError):
    """Base class for errors that abort a pipeline run."""


class IngestionError(PipelineError):
    pass


class TypeCoercionError(PipelineError):
    pass


class SchemaMismatchError(PipelineError):
    pass


class DegenerateFoldError(PipelineError):
    pass


class SearchTimeoutError(PipelineError):
    pass


@dataclass(frozen=True)
class PipelineConfig:
    min_non_missing_ratio: float = 0.05
    coercion_policy: str = "strict"
    freq_cut: float = 95.0 / 5.0
    unique_cut: float = 10.0
    corr_cutoff: float = 0.9
    train_fraction: float = 0.8
    split_rate_tolerance: float = 0.02
    cv_folds: int = 5
    grid_levels: int = 5
    min_leaf_range: tuple[int, int] = (2, 40)
    n_estimators: int = 450
    random_state: int = 42
    n_jobs: int = -1
    search_timeout_seconds: float | None = None

    def validate(self) -> "PipelineConfig":
        if not 0.0 <= float(self.min_non_missing_ratio) < 1.0:
            raise ValueError("min_non_missing_ratio must be in [0, 1).")
        if self.coercion_policy not in {"strict", "coerce"}:
            raise ValueError(f"Unsupported coercion policy: {self.coercion_policy}")
        if float(self.freq_cut) <= 1.0:
            raise ValueError("freq_cut must be > 1.")
        if not 0.0 < float(self.unique_cut) <= 100.0:
            raise ValueError("unique_cut must be in (0, 100].")
        if not 0.0 < float(self.corr_cutoff) <= 1.0:
            raise ValueError("corr_cutoff must be in (0, 1].")
        if not 0.0 < float(self.train_fraction) < 1.0:
            raise ValueError("train_fraction must be in (0, 1).")
        if int(self.cv_folds) < 2:
            raise ValueError("cv_folds must be >= 2.")
        if int(self.grid_levels) < 1:
            raise ValueError("grid_levels must be >= 1.")
        low, high = self.min_leaf_range
        if int(low) < 1 or int(high) < int(low):
            raise ValueError("min_leaf_range must satisfy 1 <= low <= high.")
        if int(self.n_estimators) < 1:
            raise ValueError("n_estimators must be >= 1.")
        if self.search_timeout_seconds is not None and float(self.search_timeout_seconds) <= 0:
            raise ValueError("search_timeout_seconds must be positive when set.")
        return self

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["min_leaf_range"] = list(self.min_leaf_range)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PipelineConfig":
        data = dict(payload)
        if "min_leaf_range" in data:
            data["min_leaf_range"] = tuple(int(v) for v in data["min_leaf_range"])
        return cls(**data)


def normalize_column_name(name: Any, *, position: int | None = None) -> str:
    text = NON_ALNUM_RE.sub("_", str(name).strip()).strip("_").lower()
    if position == 0 and (not text or text == "x" or UNNAMED_RE.match(text)):
        return ROW_INDEX_COL
    return text


def normalize_column_names(columns: list[Any]) -> list[str]:
    return [normalize_column_name(c, position=i) for i, c in enumerate(columns)]


def save_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=_json_default), encoding="utf-8")


def _json_default(value: Any) -> Any:
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (pd.Timestamp, Path)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def multiclass_auc(y_true: pd.Series | np.ndarray, y_prob: np.ndarray, *, classes: list[str]) -> float:
    """One-vs-rest AUC, macro averaged over ``classes``.

    ``y_prob`` columns must follow the order of ``classes``.
    """
    y = np.asarray(pd.Series(y_true).astype(str))
    return float(roc_auc_score(y, np.asarray(y_prob, dtype=float), multi_class="ovr", average="macro", labels=classes))


def compute_metrics(
    y_true: pd.Series,
    y_pred: np.ndarray,
    y_prob: np.ndarray,
    *,
    classes: list[str],
) -> dict[str, float]:
    metrics: dict[str, float] = {"accuracy": float(accuracy_score(pd.Series(y_true).astype(str), np.asarray(y_pred).astype(str)))}
    try:
        metrics["roc_auc_ovr_macro"] = multiclass_auc(y_true, y_prob, classes=classes)
    except ValueError as exc:
        logger.warning("AUC undefined for this partition: %s", exc)
        metrics["roc_auc_ovr_macro"] = float("nan")
    return metrics


def class_distribution(series: pd.Series) -> dict[str, Any]:
    s = series.astype(str)
    counts = s.value_counts().sort_index()
    total = int(len(s))
    return {
        "rows": total,
        "class_counts": {str(k): int(v) for k, v in counts.items()},
        "class_fractions": {str(k): float(v) / total for k, v in counts.items()} if total > 0 else {},
    }


def _max_fraction_gap(part: pd.Series, reference: pd.Series) -> float:
    ref = reference.astype(str).value_counts(normalize=True)
    got = part.astype(str).value_counts(normalize=True).reindex(ref.index, fill_value=0.0)
    return float((got - ref).abs().max()) if len(ref) > 0 else 0.0


def stratified_train_val_split(
    df: pd.DataFrame,
    *,
    target_col: str = OUTCOME_COL,
    train_fraction: float = 0.8,
    random_state: int = 42,
    max_attempts: int = 50,
    rate_tolerance: float = 0.02,
    strict_rate_match: bool = False,
) -> tuple[pd.DataFrame, pd.DataFrame, dict[str, Any]]:
    if target_col not in df.columns:
        raise ValueError(f"Missing target column: {target_col}")
    if not 0.0 < float(train_fraction) < 1.0:
        raise ValueError("train_fraction must be in (0, 1).")
    if int(max_attempts) <= 0:
        raise ValueError("max_attempts must be a positive integer.")
    if float(rate_tolerance) < 0.0:
        raise ValueError("rate_tolerance must be >= 0.")

    y = df[target_col].astype(str)
    tol = float(rate_tolerance)

    best_item: dict[str, Any] | None = None
    for attempt in range(int(max_attempts)):
        seed = int(random_state) + attempt
        train_df, val_df = train_test_split(
            df,
            train_size=float(train_fraction),
            stratify=y,
            random_state=seed,
        )
        max_gap = max(_max_fraction_gap(train_df[target_col], y), _max_fraction_gap(val_df[target_col], y))
        if best_item is None or max_gap < best_item["max_gap"]:
            best_item = {
                "train_df": train_df,
                "val_df": val_df,
                "seed": seed,
                "attempt": attempt + 1,
                "max_gap": max_gap,
            }
        if max_gap <= tol:
            break

    if best_item is None:
        raise RuntimeError("Failed to build stratified split.")

    constraint_satisfied = bool(best_item["max_gap"] <= tol)
    if not constraint_satisfied:
        message = (
            f"Could not satisfy rate_tolerance={tol:.4f} after {int(max_attempts)} attempts; "
            f"best_max_gap={best_item['max_gap']:.4f}."
        )
        if strict_rate_match:
            raise ValueError(message)
        logger.warning(message)

    train_df = best_item["train_df"]
    val_df = best_item["val_df"]
    summary = {
        "mode": "stratified_random_split",
        "train_fraction": float(train_fraction),
        "random_state": int(random_state),
        "attempts_used": int(best_item["attempt"]),
        "selected_seed": int(best_item["seed"]),
        "rate_tolerance": tol,
        "rate_match_satisfied": constraint_satisfied,
        "max_class_fraction_gap": float(best_item["max_gap"]),
        "full": class_distribution(df[target_col]),
        "train": class_distribution(train_df[target_col]),
        "validation": class_distribution(val_df[target_col]),
    }
    return train_df, val_df, summary
