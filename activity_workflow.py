from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from activity_common import DEFAULT_SCORING_URL, DEFAULT_TRAINING_URL, PipelineConfig
from rf_standalone.rf_workflow import download_datasets, prepare_datasets, score_csv
from rf_standalone.run_rf_pipeline import add_pipeline_arguments, run_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Weight-lifting activity-quality workflow: download, prepare, train a random forest, score."
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    sub = parser.add_subparsers(dest="command", required=True)

    p_download = sub.add_parser("download", help="Download the training and scoring CSVs.")
    p_download.add_argument("--data-dir", default="data")
    p_download.add_argument("--training-url", default=DEFAULT_TRAINING_URL)
    p_download.add_argument("--scoring-url", default=DEFAULT_SCORING_URL)
    p_download.add_argument("--timeout", type=int, default=60)
    p_download.add_argument("--force", action=argparse.BooleanOptionalAction, default=False)

    defaults = PipelineConfig()
    p_prepare = sub.add_parser("prepare", help="Column filter + type coercion only; writes cleaned CSVs.")
    p_prepare.add_argument("--training-csv", default="data/pml-training.csv")
    p_prepare.add_argument("--scoring-csv", default="data/pml-testing.csv")
    p_prepare.add_argument("--output-dir", default="output/rf/data")
    p_prepare.add_argument("--min-non-missing-ratio", type=float, default=defaults.min_non_missing_ratio)
    p_prepare.add_argument("--coercion-policy", choices=["strict", "coerce"], default=defaults.coercion_policy)

    p_train = sub.add_parser("train", help="Run the full pipeline: prepare, select features, grid search, evaluate.")
    add_pipeline_arguments(p_train)

    p_score = sub.add_parser("score", help="Score a CSV with a saved model bundle.")
    p_score.add_argument("--model-bundle", default="output/rf/model/model_bundle.joblib")
    p_score.add_argument("--input", default="data/pml-testing.csv")
    p_score.add_argument("--output", default="output/rf/scored.csv")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "download":
            summary = download_datasets(
                Path(args.data_dir),
                training_url=args.training_url,
                scoring_url=args.scoring_url,
                timeout=args.timeout,
                force=bool(args.force),
            )
            print(json.dumps(summary, indent=2, ensure_ascii=False))
            return 0

        if args.command == "prepare":
            config = PipelineConfig(
                min_non_missing_ratio=args.min_non_missing_ratio,
                coercion_policy=args.coercion_policy,
            ).validate()
            scoring_csv = Path(args.scoring_csv) if args.scoring_csv else None
            _, _, summary = prepare_datasets(
                Path(args.training_csv),
                scoring_csv,
                Path(args.output_dir),
                config=config,
            )
            print(json.dumps(summary, indent=2, ensure_ascii=False))
            return 0

        if args.command == "train":
            report = run_pipeline(args)
            print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
            return 0

        if args.command == "score":
            payload = score_csv(Path(args.model_bundle), Path(args.input), Path(args.output))
            print(json.dumps(payload, indent=2, ensure_ascii=False))
            return 0

        raise ValueError(f"Unknown command: {args.command}")
    except Exception as exc:
        logger.error("[ERROR] %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
