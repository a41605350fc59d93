from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from itertools import product
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import StratifiedKFold

from activity_common import DegenerateFoldError, SearchTimeoutError, multiclass_auc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchResult:
    grid: tuple[dict[str, int], ...]
    fold_scores: np.ndarray
    mean_scores: np.ndarray
    std_scores: np.ndarray
    best_index: int
    cv_folds: int
    metric: str = "roc_auc_ovr_macro"

    @property
    def best_params(self) -> dict[str, int]:
        return dict(self.grid[self.best_index])

    @property
    def best_score(self) -> float:
        return float(self.mean_scores[self.best_index])

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for idx, params in enumerate(self.grid):
            row: dict[str, Any] = {"grid_position": idx, **params}
            row[f"mean_{self.metric}"] = float(self.mean_scores[idx])
            row[f"std_{self.metric}"] = float(self.std_scores[idx])
            for fold in range(self.cv_folds):
                row[f"fold_{fold}"] = float(self.fold_scores[idx, fold])
            row["selected"] = idx == self.best_index
            rows.append(row)
        return pd.DataFrame(rows)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "cv_folds": int(self.cv_folds),
            "n_combinations": len(self.grid),
            "best_index": int(self.best_index),
            "best_params": self.best_params,
            "best_score": self.best_score,
        }


def _even_levels(low: int, high: int, levels: int) -> list[int]:
    values = np.rint(np.linspace(int(low), int(high), int(levels))).astype(int).tolist()
    out: list[int] = []
    for v in values:
        if v not in out:
            out.append(int(v))
    return out


def build_param_grid(
    n_predictors: int,
    *,
    levels: int = 5,
    min_leaf_range: tuple[int, int] = (2, 40),
) -> list[dict[str, int]]:
    if n_predictors < 1:
        raise ValueError("n_predictors must be >= 1.")
    max_features_levels = _even_levels(1, n_predictors, levels)
    min_leaf_levels = _even_levels(min_leaf_range[0], min_leaf_range[1], levels)
    return [
        {"max_features": mf, "min_samples_leaf": leaf}
        for mf, leaf in product(max_features_levels, min_leaf_levels)
    ]


def check_folds(
    y: pd.Series,
    splits: list[tuple[np.ndarray, np.ndarray]],
    *,
    classes: list[str],
    cv_folds: int,
) -> None:
    labels = y.astype(str).to_numpy()
    counts = pd.Series(labels).value_counts()
    for label in classes:
        n = int(counts.get(label, 0))
        if n < cv_folds:
            raise DegenerateFoldError(
                f"Class '{label}' has {n} row(s); at least {cv_folds} are needed for {cv_folds}-fold cross-validation."
            )
    for fold, (train_idx, test_idx) in enumerate(splits):
        for part, idx in (("training", train_idx), ("held-out", test_idx)):
            present = set(labels[idx])
            absent = [c for c in classes if c not in present]
            if absent:
                raise DegenerateFoldError(
                    f"Fold {fold} {part} part has no rows of class(es) {absent}; AUC cannot be computed."
                )


def _fit_and_score(
    x: pd.DataFrame,
    y: pd.Series,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
    params: dict[str, int],
    *,
    n_estimators: int,
    random_state: int,
    classes: list[str],
) -> float:
    model = RandomForestClassifier(
        n_estimators=n_estimators,
        max_features=int(params["max_features"]),
        min_samples_leaf=int(params["min_samples_leaf"]),
        random_state=random_state,
        n_jobs=1,
    )
    model.fit(x.iloc[train_idx], y.iloc[train_idx])
    prob = model.predict_proba(x.iloc[test_idx])
    # predict_proba columns follow model.classes_, realign to ``classes``
    col_of = {str(c): i for i, c in enumerate(model.classes_)}
    prob = prob[:, [col_of[c] for c in classes]]
    return multiclass_auc(y.iloc[test_idx], prob, classes=classes)


def run_grid_search(
    x: pd.DataFrame,
    y: pd.Series,
    grid: list[dict[str, int]],
    *,
    classes: list[str],
    cv_folds: int = 5,
    n_estimators: int = 450,
    random_state: int = 42,
    n_jobs: int = -1,
    timeout_seconds: float | None = None,
) -> SearchResult:
    if not grid:
        raise ValueError("Hyperparameter grid is empty.")
    y = y.astype(str)
    cv = StratifiedKFold(n_splits=cv_folds, shuffle=True, random_state=random_state)
    check_folds(y, [], classes=classes, cv_folds=cv_folds)
    splits = list(cv.split(x, y))
    check_folds(y, splits, classes=classes, cv_folds=cv_folds)

    tasks = [(ci, fi) for ci in range(len(grid)) for fi in range(cv_folds)]
    scores = np.full((len(grid), cv_folds), np.nan, dtype=float)
    workers = effective_n_jobs(n_jobs)
    batch_size = len(tasks) if timeout_seconds is None else max(workers * 2, 1)
    started = time.monotonic()
    logger.info(
        "Grid search: %d combinations x %d folds = %d fits on %d worker(s)",
        len(grid),
        cv_folds,
        len(tasks),
        workers,
    )

    with Parallel(n_jobs=n_jobs) as parallel:
        for start in range(0, len(tasks), batch_size):
            if timeout_seconds is not None and time.monotonic() - started > float(timeout_seconds):
                raise SearchTimeoutError(
                    f"Grid search exceeded {timeout_seconds}s after {start} of {len(tasks)} fits."
                )
            batch = tasks[start : start + batch_size]
            results = parallel(
                delayed(_fit_and_score)(
                    x,
                    y,
                    splits[fi][0],
                    splits[fi][1],
                    grid[ci],
                    n_estimators=n_estimators,
                    random_state=random_state,
                    classes=classes,
                )
                for ci, fi in batch
            )
            for (ci, fi), score in zip(batch, results):
                scores[ci, fi] = score
            logger.info("Grid search: %d/%d fits done", min(start + batch_size, len(tasks)), len(tasks))

    mean_scores = scores.mean(axis=1)
    std_scores = scores.std(axis=1)
    best_index = int(np.argmax(mean_scores))
    result = SearchResult(
        grid=tuple(dict(p) for p in grid),
        fold_scores=scores,
        mean_scores=mean_scores,
        std_scores=std_scores,
        best_index=best_index,
        cv_folds=int(cv_folds),
    )
    logger.info("Grid search selected %s (mean AUC %.5f)", result.best_params, result.best_score)
    return result
