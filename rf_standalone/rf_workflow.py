from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import joblib
import numpy as np
import pandas as pd
import requests

from activity_common import (
    CLASS_LABELS,
    DEFAULT_SCORING_URL,
    DEFAULT_TRAINING_URL,
    NA_MARKERS,
    OUTCOME_COL,
    ROW_INDEX_COL,
    SUBJECT_COL,
    TIMESTAMP_COL,
    TIMESTAMP_FORMAT,
    WINDOW_FLAG_COL,
    WINDOW_FLAG_LEVELS,
    IngestionError,
    PipelineConfig,
    SchemaMismatchError,
    TypeCoercionError,
    normalize_column_names,
    save_json,
)
from rf_standalone.feature_recipe import FeatureRecipe, apply_recipe

logger = logging.getLogger(__name__)

BUNDLE_FORMAT_VERSION = 1
PROB_PREFIX = "prob_"
PREDICTION_COL = f"predicted_{OUTCOME_COL}"


def download_datasets(
    data_dir: Path,
    *,
    training_url: str = DEFAULT_TRAINING_URL,
    scoring_url: str = DEFAULT_SCORING_URL,
    timeout: int = 60,
    force: bool = False,
) -> dict[str, Any]:
    data_dir.mkdir(parents=True, exist_ok=True)
    targets = {
        "training_csv": (training_url, data_dir / Path(training_url).name),
        "scoring_csv": (scoring_url, data_dir / Path(scoring_url).name),
    }
    summary: dict[str, Any] = {"data_dir": str(data_dir)}
    for key, (url, dest) in targets.items():
        if dest.exists() and not force:
            logger.info("Skipping download of %s, %s already exists", url, dest)
            summary[key] = {"url": url, "path": str(dest), "downloaded": False, "bytes": dest.stat().st_size}
            continue
        logger.info("Downloading %s -> %s", url, dest)
        tmp = dest.with_suffix(dest.suffix + ".part")
        completed = False
        try:
            with requests.get(url, stream=True, timeout=timeout) as resp:
                resp.raise_for_status()
                with tmp.open("wb") as fh:
                    for chunk in resp.iter_content(chunk_size=1 << 16):
                        if chunk:
                            fh.write(chunk)
            tmp.replace(dest)
            completed = True
        except requests.RequestException as exc:
            raise IngestionError(f"Failed to download {url}: {exc}") from exc
        finally:
            if not completed and tmp.exists():
                tmp.unlink()
        summary[key] = {"url": url, "path": str(dest), "downloaded": True, "bytes": dest.stat().st_size}
    return summary


def load_raw_table(path: Path) -> pd.DataFrame:
    """Read a delimited file with every field kept as text.

    Column names are normalized; ``NA_MARKERS`` become missing values.
    """
    path = Path(path)
    if not path.exists() or not path.is_file():
        raise IngestionError(f"Input file not found: {path}")
    try:
        df = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            na_values=NA_MARKERS,
            low_memory=False,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, OSError) as exc:
        raise IngestionError(f"Could not read {path}: {exc}") from exc

    if df.empty or len(df.columns) == 0:
        raise IngestionError(f"{path} contains no rows.")

    columns = normalize_column_names(list(df.columns))
    duplicated = sorted({c for c in columns if columns.count(c) > 1})
    if duplicated:
        raise IngestionError(f"{path} has duplicate column names after normalization: {duplicated}")
    df.columns = columns
    logger.info("Loaded %s: %d rows x %d columns", path, len(df), len(df.columns))
    return df


def _non_missing_mask(series: pd.Series) -> pd.Series:
    if pd.api.types.is_string_dtype(series) or series.dtype == object:
        text = series.astype(str).str.strip()
        return series.notna() & (text != "") & (text.str.lower() != "nan")
    return series.notna()


def fit_column_filter(
    train_df: pd.DataFrame,
    *,
    min_non_missing_ratio: float = 0.05,
) -> tuple[list[str], dict[str, float]]:
    if len(train_df) == 0:
        raise IngestionError("Cannot fit the column filter on an empty table.")
    ratios = {col: float(_non_missing_mask(train_df[col]).mean()) for col in train_df.columns}
    retained = [col for col in train_df.columns if ratios[col] > float(min_non_missing_ratio)]
    logger.info(
        "Column filter kept %d of %d columns (non-missing ratio > %.3f)",
        len(retained),
        len(train_df.columns),
        min_non_missing_ratio,
    )
    return retained, ratios


def apply_column_filter(df: pd.DataFrame, retained_columns: list[str]) -> pd.DataFrame:
    present = set(df.columns)
    return df[[c for c in retained_columns if c in present]].copy()


def _as_text(series: pd.Series) -> pd.Series:
    return series.where(series.isna(), series.astype(str).str.strip())


def _as_category(text: pd.Series, levels: list[str], name: str) -> pd.Series:
    # values outside ``levels`` become missing before the Categorical is built
    known = text.where(text.isna() | text.isin(levels))
    return pd.Series(pd.Categorical(known, categories=levels), index=text.index, name=name)


def _coerce_column(col: str, series: pd.Series) -> pd.Series:
    if col == OUTCOME_COL:
        return _as_category(_as_text(series), CLASS_LABELS, col)
    if col == WINDOW_FLAG_COL:
        return _as_category(_as_text(series).str.lower(), WINDOW_FLAG_LEVELS, col)
    if col == TIMESTAMP_COL:
        return pd.to_datetime(_as_text(series), format=TIMESTAMP_FORMAT, errors="coerce")
    if col == SUBJECT_COL:
        return _as_text(series)
    if pd.api.types.is_numeric_dtype(series):
        return series
    return pd.to_numeric(_as_text(series), errors="coerce")


def coerce_types(df: pd.DataFrame, *, policy: str = "strict") -> pd.DataFrame:
    """Cast every column to its semantic type.

    ``strict`` raises TypeCoercionError on the first column holding an
    unparsable value; ``coerce`` turns such values into missing and logs them.
    """
    if policy not in {"strict", "coerce"}:
        raise ValueError(f"Unsupported coercion policy: {policy}")

    out: dict[str, pd.Series] = {}
    for col in df.columns:
        raw = df[col]
        typed = _coerce_column(col, raw)
        bad = _non_missing_mask(raw) & typed.isna()
        n_bad = int(bad.sum())
        if n_bad:
            examples = raw[bad].astype(str).unique()[:5].tolist()
            if policy == "strict":
                raise TypeCoercionError(
                    f"Column '{col}' has {n_bad} value(s) that cannot be parsed: {examples}"
                )
            logger.warning("Column '%s': %d unparsable value(s) set to missing, e.g. %s", col, n_bad, examples)
        out[col] = typed

    typed_df = pd.DataFrame(out, index=df.index)
    if ROW_INDEX_COL in typed_df.columns:
        typed_df = typed_df.drop(columns=[ROW_INDEX_COL])
    return typed_df


def prepare_tables(
    train_raw: pd.DataFrame,
    scoring_raw: pd.DataFrame | None,
    *,
    config: PipelineConfig,
) -> tuple[pd.DataFrame, pd.DataFrame | None, dict[str, Any]]:
    if OUTCOME_COL not in train_raw.columns:
        raise SchemaMismatchError(f"Training table must include the outcome column '{OUTCOME_COL}'.")

    retained, ratios = fit_column_filter(train_raw, min_non_missing_ratio=config.min_non_missing_ratio)
    if OUTCOME_COL not in retained:
        raise IngestionError(f"Outcome column '{OUTCOME_COL}' is almost entirely missing.")
    dropped = [c for c in train_raw.columns if c not in retained]

    train_df = coerce_types(apply_column_filter(train_raw, retained), policy=config.coercion_policy)
    missing_outcome = int(train_df[OUTCOME_COL].isna().sum())
    if missing_outcome:
        raise TypeCoercionError(f"Outcome column '{OUTCOME_COL}' is missing for {missing_outcome} training row(s).")

    scoring_df: pd.DataFrame | None = None
    scoring_dropped: list[str] = []
    if scoring_raw is not None:
        scoring_dropped = [c for c in scoring_raw.columns if c not in set(retained)]
        scoring_df = coerce_types(apply_column_filter(scoring_raw, retained), policy=config.coercion_policy)

    report = {
        "min_non_missing_ratio": float(config.min_non_missing_ratio),
        "coercion_policy": config.coercion_policy,
        "retained_columns": retained,
        "dropped_by_missing_ratio": dropped,
        "dropped_from_scoring": scoring_dropped,
        "non_missing_ratio": {c: ratios[c] for c in dropped},
        "train_rows": int(len(train_df)),
        "train_columns": int(len(train_df.columns)),
        "scoring_rows": int(len(scoring_df)) if scoring_df is not None else 0,
        "scoring_columns": int(len(scoring_df.columns)) if scoring_df is not None else 0,
    }
    return train_df, scoring_df, report


def prepare_datasets(
    training_csv: Path,
    scoring_csv: Path | None,
    data_dir: Path,
    *,
    config: PipelineConfig,
) -> tuple[pd.DataFrame, pd.DataFrame | None, dict[str, Any]]:
    data_dir.mkdir(parents=True, exist_ok=True)
    train_raw = load_raw_table(training_csv)
    scoring_raw = load_raw_table(scoring_csv) if scoring_csv is not None else None

    train_df, scoring_df, report = prepare_tables(train_raw, scoring_raw, config=config)
    report["training_csv"] = str(training_csv)
    report["scoring_csv"] = str(scoring_csv) if scoring_csv is not None else None
    report["raw_train_columns"] = int(len(train_raw.columns))

    train_df.to_csv(data_dir / "training_clean.csv", index=True)
    if scoring_df is not None:
        scoring_df.to_csv(data_dir / "scoring_clean.csv", index=True)
    save_json(data_dir / "prepare_summary.json", report)
    return train_df, scoring_df, report


def save_model_bundle(
    path: Path,
    *,
    model: Any,
    recipe: FeatureRecipe,
    retained_columns: list[str],
    best_params: dict[str, Any],
    config: PipelineConfig,
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    bundle = {
        "format_version": BUNDLE_FORMAT_VERSION,
        "retained_columns": list(retained_columns),
        "coercion_policy": config.coercion_policy,
        "recipe": recipe.to_dict(),
        "best_params": dict(best_params),
        "classes": [str(c) for c in model.classes_],
        "config": config.to_dict(),
        "model": model,
    }
    joblib.dump(bundle, path)
    logger.info("Saved model bundle to %s", path)
    return path


def load_model_bundle(path: Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise IngestionError(f"Model bundle not found: {path}")
    bundle = joblib.load(path)
    if not isinstance(bundle, dict) or bundle.get("format_version") != BUNDLE_FORMAT_VERSION:
        raise IngestionError(f"Unsupported model bundle format in {path}.")
    bundle = dict(bundle)
    bundle["recipe"] = FeatureRecipe.from_dict(bundle["recipe"])
    return bundle


def predict_frame(model: Any, recipe: FeatureRecipe, prepared: pd.DataFrame) -> pd.DataFrame:
    x = prepared[list(recipe.predictor_cols)]
    prob = np.asarray(model.predict_proba(x), dtype=float)
    classes = [str(c) for c in model.classes_]
    out = pd.DataFrame(index=prepared.index)
    for col in recipe.identifier_cols:
        if col in prepared.columns:
            out[col] = prepared[col]
    out[PREDICTION_COL] = np.asarray(classes, dtype=object)[prob.argmax(axis=1)]
    for i, label in enumerate(classes):
        out[f"{PROB_PREFIX}{label}"] = prob[:, i]
    return out


def score_table(bundle: dict[str, Any], raw_df: pd.DataFrame) -> pd.DataFrame:
    """Apply the bundle's column filter, coercion and recipe, then predict."""
    recipe: FeatureRecipe = bundle["recipe"]
    filtered = apply_column_filter(raw_df, bundle["retained_columns"])
    typed = coerce_types(filtered, policy=bundle["coercion_policy"])
    prepared = apply_recipe(recipe, typed)
    return predict_frame(bundle["model"], recipe, prepared)


def score_csv(bundle_path: Path, input_csv: Path, output_csv: Path) -> dict[str, Any]:
    bundle = load_model_bundle(bundle_path)
    preds = score_table(bundle, load_raw_table(input_csv))
    output_csv.parent.mkdir(parents=True, exist_ok=True)
    preds.to_csv(output_csv, index=True)
    return {
        "model_bundle": str(bundle_path),
        "input_csv": str(input_csv),
        "output_csv": str(output_csv),
        "rows_scored": int(len(preds)),
        "predicted_class_counts": {str(k): int(v) for k, v in preds[PREDICTION_COL].value_counts().sort_index().items()},
    }
