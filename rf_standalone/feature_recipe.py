from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from activity_common import (
    IDENTIFIER_COLS,
    OUTCOME_COL,
    PipelineConfig,
    SchemaMismatchError,
    save_json,
)

logger = logging.getLogger(__name__)

RECIPE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class FeatureRecipe:
    """Feature-preparation decisions fitted on a training partition.

    Instances are never modified after ``fit_recipe`` returns them; use
    ``apply_recipe`` to reproduce the same predictor set on any other table.
    """

    outcome_col: str
    identifier_cols: tuple[str, ...]
    predictor_cols: tuple[str, ...]
    candidate_cols: tuple[str, ...]
    excluded_non_numeric: tuple[str, ...]
    dropped_zero_variance: tuple[str, ...]
    dropped_near_zero_variance: tuple[str, ...]
    dropped_high_correlation: tuple[str, ...]
    near_zero_stats: tuple[tuple[str, float, float], ...]
    freq_cut: float
    unique_cut: float
    corr_cutoff: float

    @property
    def dropped_cols(self) -> tuple[str, ...]:
        return (
            *self.excluded_non_numeric,
            *self.dropped_zero_variance,
            *self.dropped_near_zero_variance,
            *self.dropped_high_correlation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": RECIPE_FORMAT_VERSION,
            "outcome_col": self.outcome_col,
            "identifier_cols": list(self.identifier_cols),
            "predictor_cols": list(self.predictor_cols),
            "candidate_cols": list(self.candidate_cols),
            "excluded_non_numeric": list(self.excluded_non_numeric),
            "dropped_zero_variance": list(self.dropped_zero_variance),
            "dropped_near_zero_variance": list(self.dropped_near_zero_variance),
            "dropped_high_correlation": list(self.dropped_high_correlation),
            "near_zero_stats": [
                {"column": col, "freq_ratio": ratio, "percent_unique": pct}
                for col, ratio, pct in self.near_zero_stats
            ],
            "freq_cut": float(self.freq_cut),
            "unique_cut": float(self.unique_cut),
            "corr_cutoff": float(self.corr_cutoff),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FeatureRecipe":
        version = payload.get("format_version")
        if version != RECIPE_FORMAT_VERSION:
            raise ValueError(f"Unsupported recipe format version: {version}")
        return cls(
            outcome_col=str(payload["outcome_col"]),
            identifier_cols=tuple(payload["identifier_cols"]),
            predictor_cols=tuple(payload["predictor_cols"]),
            candidate_cols=tuple(payload["candidate_cols"]),
            excluded_non_numeric=tuple(payload["excluded_non_numeric"]),
            dropped_zero_variance=tuple(payload["dropped_zero_variance"]),
            dropped_near_zero_variance=tuple(payload["dropped_near_zero_variance"]),
            dropped_high_correlation=tuple(payload["dropped_high_correlation"]),
            near_zero_stats=tuple(
                (str(r["column"]), float(r["freq_ratio"]), float(r["percent_unique"]))
                for r in payload["near_zero_stats"]
            ),
            freq_cut=float(payload["freq_cut"]),
            unique_cut=float(payload["unique_cut"]),
            corr_cutoff=float(payload["corr_cutoff"]),
        )


def near_zero_metrics(series: pd.Series) -> tuple[float, float]:
    """Return ``(freq_ratio, percent_unique)`` for one column.

    ``freq_ratio`` is 0 when the column has fewer than two distinct values.
    """
    counts = series.dropna().value_counts()
    n = len(series)
    percent_unique = 100.0 * len(counts) / n if n > 0 else 0.0
    if len(counts) <= 1:
        return 0.0, percent_unique
    return float(counts.iloc[0]) / float(counts.iloc[1]), percent_unique


def _drop_zero_variance(df: pd.DataFrame, cols: list[str]) -> tuple[list[str], list[str]]:
    kept: list[str] = []
    dropped: list[str] = []
    for col in cols:
        if int(df[col].nunique(dropna=True)) <= 1:
            dropped.append(col)
        else:
            kept.append(col)
    return kept, dropped


def _drop_near_zero_variance(
    df: pd.DataFrame,
    cols: list[str],
    *,
    freq_cut: float,
    unique_cut: float,
) -> tuple[list[str], list[str], list[tuple[str, float, float]]]:
    kept: list[str] = []
    dropped: list[str] = []
    stats: list[tuple[str, float, float]] = []
    for col in cols:
        freq_ratio, percent_unique = near_zero_metrics(df[col])
        stats.append((col, float(freq_ratio), float(percent_unique)))
        if freq_ratio > freq_cut and percent_unique <= unique_cut:
            dropped.append(col)
        else:
            kept.append(col)
    return kept, dropped, stats


def find_correlated_columns(df: pd.DataFrame, cols: list[str], *, cutoff: float) -> list[str]:
    """Greedy decorrelation over the absolute Pearson correlation matrix.

    Columns are visited by decreasing mean absolute correlation. For every
    pair above ``cutoff`` the member whose mean absolute correlation with the
    columns still kept is larger gets dropped; on a tie the later one goes.
    """
    if len(cols) <= 1:
        return []

    corr = df[cols].corr().abs().fillna(0.0).to_numpy(dtype=float)
    n = len(cols)
    off_diag = corr.copy()
    np.fill_diagonal(off_diag, np.nan)

    mean_corr = np.nanmean(off_diag, axis=0)
    order = np.argsort(-mean_corr, kind="stable")
    corr = corr[np.ix_(order, order)]
    work = off_diag[np.ix_(order, order)]

    deleted = np.zeros(n, dtype=bool)
    for i in range(n - 1):
        if not np.any(work[~np.isnan(work)] > cutoff):
            break
        if deleted[i]:
            continue
        for j in range(i + 1, n):
            if deleted[i] or deleted[j]:
                continue
            if corr[i, j] <= cutoff:
                continue
            mean_i = np.nanmean(work[i, :]) if np.any(~np.isnan(work[i, :])) else 0.0
            mean_j = np.nanmean(work[j, :]) if np.any(~np.isnan(work[j, :])) else 0.0
            victim = i if mean_i > mean_j else j
            deleted[victim] = True
            work[victim, :] = np.nan
            work[:, victim] = np.nan

    return [cols[order[k]] for k in range(n) if deleted[k]]


def fit_recipe(
    train_df: pd.DataFrame,
    *,
    config: PipelineConfig | None = None,
    outcome_col: str = OUTCOME_COL,
    identifier_cols: list[str] | None = None,
) -> FeatureRecipe:
    cfg = config or PipelineConfig()
    id_cols = list(IDENTIFIER_COLS if identifier_cols is None else identifier_cols)

    candidates: list[str] = []
    non_numeric: list[str] = []
    for col in train_df.columns:
        if col == outcome_col or col in id_cols:
            continue
        if pd.api.types.is_numeric_dtype(train_df[col]) and not pd.api.types.is_bool_dtype(train_df[col]):
            candidates.append(col)
        else:
            non_numeric.append(col)

    kept, dropped_zero = _drop_zero_variance(train_df, candidates)
    kept, dropped_nzv, nzv_stats = _drop_near_zero_variance(
        train_df,
        kept,
        freq_cut=float(cfg.freq_cut),
        unique_cut=float(cfg.unique_cut),
    )
    dropped_corr = set(find_correlated_columns(train_df, kept, cutoff=float(cfg.corr_cutoff)))
    predictors = [c for c in kept if c not in dropped_corr]

    logger.info(
        "Feature recipe: %d candidates -> %d predictors (zero-var %d, near-zero-var %d, correlated %d, non-numeric %d)",
        len(candidates),
        len(predictors),
        len(dropped_zero),
        len(dropped_nzv),
        len(dropped_corr),
        len(non_numeric),
    )
    if not predictors:
        raise SchemaMismatchError("No usable predictor columns remain after feature preparation.")

    return FeatureRecipe(
        outcome_col=outcome_col,
        identifier_cols=tuple(c for c in id_cols if c in train_df.columns),
        predictor_cols=tuple(predictors),
        candidate_cols=tuple(candidates),
        excluded_non_numeric=tuple(non_numeric),
        dropped_zero_variance=tuple(dropped_zero),
        dropped_near_zero_variance=tuple(dropped_nzv),
        dropped_high_correlation=tuple(c for c in kept if c in dropped_corr),
        near_zero_stats=tuple(nzv_stats),
        freq_cut=float(cfg.freq_cut),
        unique_cut=float(cfg.unique_cut),
        corr_cutoff=float(cfg.corr_cutoff),
    )


def apply_recipe(recipe: FeatureRecipe, df: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in recipe.predictor_cols if c not in df.columns]
    if missing:
        raise SchemaMismatchError(f"Table is missing {len(missing)} predictor column(s) required by the recipe: {missing}")

    mentioned = {
        *recipe.identifier_cols,
        *recipe.predictor_cols,
        recipe.outcome_col,
        *recipe.dropped_cols,
    }
    ordered = [c for c in recipe.identifier_cols if c in df.columns]
    ordered.extend(recipe.predictor_cols)
    if recipe.outcome_col in df.columns:
        ordered.append(recipe.outcome_col)
    ordered.extend(c for c in df.columns if c not in mentioned)
    return df[ordered].copy()


def save_recipe(path: Path, recipe: FeatureRecipe) -> None:
    save_json(path, recipe.to_dict())


def load_recipe(path: Path) -> FeatureRecipe:
    return FeatureRecipe.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
