from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from activity_common import (  # noqa: E402
    CLASS_LABELS,
    OUTCOME_COL,
    SUBJECT_COL,
    PipelineConfig,
    class_distribution,
    save_json,
    stratified_train_val_split,
)
from rf_standalone.evaluation import (  # noqa: E402
    evaluate_model,
    fit_final_model,
    plot_confusion_matrix,
    plot_correlation_matrix,
    plot_feature_importances,
    plot_roc_curves,
    rank_feature_importances,
)
from rf_standalone.feature_recipe import apply_recipe, fit_recipe, save_recipe  # noqa: E402
from rf_standalone.grid_search import build_param_grid, run_grid_search  # noqa: E402
from rf_standalone.rf_workflow import (  # noqa: E402
    predict_frame,
    prepare_datasets,
    save_model_bundle,
)

logger = logging.getLogger(__name__)


def _top_correlated_pairs(corr: pd.DataFrame, *, top_n: int) -> pd.DataFrame:
    upper = corr.abs().where(np.triu(np.ones(corr.shape, dtype=bool), k=1))
    pairs = upper.stack().dropna().rename("abs_corr").reset_index()
    pairs.columns = ["column_a", "column_b", "abs_corr"]
    return pairs.sort_values("abs_corr", ascending=False, kind="stable").head(top_n).reset_index(drop=True)


def _build_eda_reports(
    df: pd.DataFrame,
    *,
    output_dir: Path,
    numeric_cols: list[str],
    make_plots: bool,
) -> dict[str, Any]:
    output_dir.mkdir(parents=True, exist_ok=True)
    missing = (
        df.isna()
        .mean()
        .sort_values(ascending=False)
        .rename("missing_ratio")
        .reset_index()
        .rename(columns={"index": "column"})
    )
    missing.to_csv(output_dir / "missing_ratio.csv", index=False)

    numeric_summary = df[numeric_cols].describe().T if numeric_cols else pd.DataFrame()
    if not numeric_summary.empty:
        numeric_summary.to_csv(output_dir / "numeric_summary.csv")

    artifacts = {
        "missing_ratio_csv": str(output_dir / "missing_ratio.csv"),
        "numeric_summary_csv": str(output_dir / "numeric_summary.csv"),
    }
    top_pairs: list[dict[str, Any]] = []
    if len(numeric_cols) > 1:
        corr = df[numeric_cols].corr()
        pairs = _top_correlated_pairs(corr, top_n=25)
        pairs.to_csv(output_dir / "top_correlated_pairs.csv", index=False)
        top_pairs = pairs.head(10).to_dict(orient="records")
        artifacts["top_correlated_pairs_csv"] = str(output_dir / "top_correlated_pairs.csv")
        if make_plots:
            artifacts["correlation_png"] = str(plot_correlation_matrix(corr, output_dir / "correlation_matrix.png"))

    by_subject = None
    if SUBJECT_COL in df.columns:
        by_subject = (
            pd.crosstab(df[SUBJECT_COL], df[OUTCOME_COL].astype(str))
            .reset_index()
            .to_dict(orient="records")
        )

    report = {
        "rows_total": int(len(df)),
        "cols_total": int(len(df.columns)),
        "target_distribution": class_distribution(df[OUTCOME_COL]),
        "class_counts_by_subject": by_subject,
        "numeric_columns": len(numeric_cols),
        "top_correlated_pairs": top_pairs,
        "artifacts": artifacts,
    }
    save_json(output_dir / "eda_report.json", report)
    return report


def add_pipeline_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    defaults = PipelineConfig()
    parser.add_argument("--training-csv", default="data/pml-training.csv")
    parser.add_argument("--scoring-csv", default="data/pml-testing.csv")
    parser.add_argument("--no-scoring", action="store_true", help="Skip the scoring table.")
    parser.add_argument("--output-dir", default="output/rf")
    parser.add_argument("--min-non-missing-ratio", type=float, default=defaults.min_non_missing_ratio)
    parser.add_argument("--coercion-policy", choices=["strict", "coerce"], default=defaults.coercion_policy)
    parser.add_argument("--freq-cut", type=float, default=defaults.freq_cut)
    parser.add_argument("--unique-cut", type=float, default=defaults.unique_cut)
    parser.add_argument("--corr-cutoff", type=float, default=defaults.corr_cutoff)
    parser.add_argument("--train-fraction", type=float, default=defaults.train_fraction)
    parser.add_argument("--split-rate-tolerance", type=float, default=defaults.split_rate_tolerance)
    parser.add_argument("--cv-folds", type=int, default=defaults.cv_folds)
    parser.add_argument("--grid-levels", type=int, default=defaults.grid_levels)
    parser.add_argument("--min-leaf-range", type=int, nargs=2, default=list(defaults.min_leaf_range), metavar=("LOW", "HIGH"))
    parser.add_argument("--n-estimators", type=int, default=defaults.n_estimators)
    parser.add_argument("--random-state", type=int, default=defaults.random_state)
    parser.add_argument("--n-jobs", type=int, default=defaults.n_jobs)
    parser.add_argument("--search-timeout-seconds", type=float, default=None)
    parser.add_argument("--plots", action=argparse.BooleanOptionalAction, default=True)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Random-forest activity-quality pipeline: clean, select features, grid search, evaluate."
    )
    parser.add_argument("--log-level", default="INFO")
    return add_pipeline_arguments(parser)


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    return PipelineConfig(
        min_non_missing_ratio=args.min_non_missing_ratio,
        coercion_policy=args.coercion_policy,
        freq_cut=args.freq_cut,
        unique_cut=args.unique_cut,
        corr_cutoff=args.corr_cutoff,
        train_fraction=args.train_fraction,
        split_rate_tolerance=args.split_rate_tolerance,
        cv_folds=args.cv_folds,
        grid_levels=args.grid_levels,
        min_leaf_range=(int(args.min_leaf_range[0]), int(args.min_leaf_range[1])),
        n_estimators=args.n_estimators,
        random_state=args.random_state,
        n_jobs=args.n_jobs,
        search_timeout_seconds=args.search_timeout_seconds,
    ).validate()


def run_pipeline(args: argparse.Namespace) -> dict[str, Any]:
    config = config_from_args(args)
    training_csv = Path(args.training_csv)
    scoring_csv = None if args.no_scoring or not args.scoring_csv else Path(args.scoring_csv)
    output_dir = Path(args.output_dir)
    analysis_dir = output_dir / "analysis"
    model_dir = output_dir / "model"
    data_dir = output_dir / "data"
    for d in (analysis_dir, model_dir, data_dir):
        d.mkdir(parents=True, exist_ok=True)

    logger.info("Stage 1-3: ingestion, column filter, type coercion")
    train_df, scoring_df, prepare_report = prepare_datasets(training_csv, scoring_csv, data_dir, config=config)

    logger.info("Stage 4: split and feature preparation")
    train_part, val_part, split_summary = stratified_train_val_split(
        train_df,
        target_col=OUTCOME_COL,
        train_fraction=config.train_fraction,
        random_state=config.random_state,
        rate_tolerance=config.split_rate_tolerance,
    )
    train_part.to_csv(data_dir / "train_partition.csv", index=True)
    val_part.to_csv(data_dir / "validation_partition.csv", index=True)
    save_json(data_dir / "split_summary.json", split_summary)

    recipe = fit_recipe(train_part, config=config)
    save_recipe(analysis_dir / "feature_recipe.json", recipe)
    train_prepared = apply_recipe(recipe, train_part)
    val_prepared = apply_recipe(recipe, val_part)
    predictors = list(recipe.predictor_cols)

    eda_report = _build_eda_reports(
        train_part,
        output_dir=analysis_dir,
        numeric_cols=list(recipe.candidate_cols),
        make_plots=bool(args.plots),
    )

    x_train = train_prepared[predictors]
    y_train = train_prepared[OUTCOME_COL].astype(str)
    x_val = val_prepared[predictors]
    y_val = val_prepared[OUTCOME_COL].astype(str)

    logger.info("Stage 5: hyperparameter search")
    grid = build_param_grid(
        len(predictors),
        levels=config.grid_levels,
        min_leaf_range=config.min_leaf_range,
    )
    search = run_grid_search(
        x_train,
        y_train,
        grid,
        classes=CLASS_LABELS,
        cv_folds=config.cv_folds,
        n_estimators=config.n_estimators,
        random_state=config.random_state,
        n_jobs=config.n_jobs,
        timeout_seconds=config.search_timeout_seconds,
    )
    search.to_frame().to_csv(analysis_dir / "grid_search_results.csv", index=False)

    model = fit_final_model(
        x_train,
        y_train,
        search.best_params,
        n_estimators=config.n_estimators,
        random_state=config.random_state,
        n_jobs=config.n_jobs,
    )
    evaluation = evaluate_model(model, x_val, y_val, classes=CLASS_LABELS)
    importances = rank_feature_importances(model, predictors)

    evaluation.confusion.to_csv(analysis_dir / "confusion_matrix.csv")
    evaluation.roc_points.to_csv(analysis_dir / "roc_points.csv", index=False)
    evaluation.predictions.to_csv(analysis_dir / "validation_predictions.csv", index=True)
    importances.to_csv(analysis_dir / "feature_importance.csv", index=False)
    save_json(analysis_dir / "evaluation_report.json", evaluation.to_dict())

    figures: dict[str, str] = {}
    if args.plots:
        figures["roc_curves_png"] = str(plot_roc_curves(evaluation.roc_points, evaluation.per_class_auc, analysis_dir / "roc_curves.png"))
        figures["confusion_matrix_png"] = str(plot_confusion_matrix(evaluation.confusion, analysis_dir / "confusion_matrix.png"))
        figures["feature_importance_png"] = str(plot_feature_importances(importances, analysis_dir / "feature_importance.png"))

    bundle_path = save_model_bundle(
        model_dir / "model_bundle.joblib",
        model=model,
        recipe=recipe,
        retained_columns=prepare_report["retained_columns"],
        best_params=search.best_params,
        config=config,
    )

    scoring_summary: dict[str, Any] | None = None
    if scoring_df is not None:
        preds = predict_frame(model, recipe, apply_recipe(recipe, scoring_df))
        preds.to_csv(output_dir / "predictions.csv", index=True)
        scoring_summary = {
            "rows_scored": int(len(preds)),
            "predictions_csv": str(output_dir / "predictions.csv"),
            "predicted_class_counts": {
                str(k): int(v) for k, v in preds[f"predicted_{OUTCOME_COL}"].value_counts().sort_index().items()
            },
        }

    payload = {
        "training_csv": str(training_csv),
        "scoring_csv": str(scoring_csv) if scoring_csv is not None else None,
        "config": config.to_dict(),
        "prepare": {k: v for k, v in prepare_report.items() if k != "non_missing_ratio"},
        "split": split_summary,
        "feature_recipe": {
            "n_predictors": len(predictors),
            "dropped_zero_variance": list(recipe.dropped_zero_variance),
            "dropped_near_zero_variance": list(recipe.dropped_near_zero_variance),
            "dropped_high_correlation": list(recipe.dropped_high_correlation),
            "excluded_non_numeric": list(recipe.excluded_non_numeric),
            "recipe_json": str(analysis_dir / "feature_recipe.json"),
        },
        "eda": eda_report,
        "grid_search": search.to_dict(),
        "validation": evaluation.to_dict(),
        "top_features": importances.head(10).to_dict(orient="records"),
        "figures": figures,
        "model_bundle": str(bundle_path),
        "scoring": scoring_summary,
    }
    save_json(output_dir / "training_report.json", payload)
    return payload


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    report = run_pipeline(args)
    print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
