from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import confusion_matrix, roc_auc_score, roc_curve
from sklearn.preprocessing import label_binarize

from activity_common import compute_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    metrics: dict[str, float]
    per_class_auc: dict[str, float]
    roc_points: pd.DataFrame
    confusion: pd.DataFrame
    predictions: pd.DataFrame

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "per_class_auc": dict(self.per_class_auc),
            "confusion_matrix": {
                "rows": "true",
                "columns": "predicted",
                "labels": [str(c) for c in self.confusion.columns],
                "counts": self.confusion.to_numpy().astype(int).tolist(),
            },
            "n_rows": int(len(self.predictions)),
        }


def fit_final_model(
    x: pd.DataFrame,
    y: pd.Series,
    params: dict[str, int],
    *,
    n_estimators: int = 450,
    random_state: int = 42,
    n_jobs: int = -1,
) -> RandomForestClassifier:
    model = RandomForestClassifier(
        n_estimators=n_estimators,
        max_features=int(params["max_features"]),
        min_samples_leaf=int(params["min_samples_leaf"]),
        random_state=random_state,
        n_jobs=n_jobs,
    )
    model.fit(x, y.astype(str))
    logger.info("Final model fitted on %d rows x %d predictors with %s", len(x), x.shape[1], params)
    return model


def evaluate_model(
    model: RandomForestClassifier,
    x: pd.DataFrame,
    y: pd.Series,
    *,
    classes: list[str],
) -> EvaluationResult:
    y_true = y.astype(str)
    raw_prob = np.asarray(model.predict_proba(x), dtype=float)
    col_of = {str(c): i for i, c in enumerate(model.classes_)}
    prob = raw_prob[:, [col_of[c] for c in classes]]
    y_pred = np.asarray(classes, dtype=object)[prob.argmax(axis=1)]

    metrics = compute_metrics(y_true, y_pred, prob, classes=classes)

    onehot = label_binarize(y_true.to_numpy(), classes=classes)
    per_class_auc: dict[str, float] = {}
    roc_frames: list[pd.DataFrame] = []
    for i, label in enumerate(classes):
        if onehot[:, i].min() == onehot[:, i].max():
            per_class_auc[label] = float("nan")
            continue
        fpr, tpr, thresholds = roc_curve(onehot[:, i], prob[:, i])
        per_class_auc[label] = float(roc_auc_score(onehot[:, i], prob[:, i]))
        roc_frames.append(pd.DataFrame({"class": label, "fpr": fpr, "tpr": tpr, "threshold": thresholds}))
    roc_points = pd.concat(roc_frames, ignore_index=True) if roc_frames else pd.DataFrame(columns=["class", "fpr", "tpr", "threshold"])

    cm = confusion_matrix(y_true, y_pred, labels=classes)
    confusion = pd.DataFrame(
        cm,
        index=pd.Index(classes, name="true"),
        columns=pd.Index(classes, name="predicted"),
    )

    predictions = pd.DataFrame({"true": y_true.to_numpy(), "predicted": y_pred}, index=x.index)
    for i, label in enumerate(classes):
        predictions[f"prob_{label}"] = prob[:, i]

    logger.info(
        "Validation accuracy %.4f, macro AUC %.4f on %d rows",
        metrics["accuracy"],
        metrics["roc_auc_ovr_macro"],
        len(x),
    )
    return EvaluationResult(
        metrics=metrics,
        per_class_auc=per_class_auc,
        roc_points=roc_points,
        confusion=confusion,
        predictions=predictions,
    )


def rank_feature_importances(model: RandomForestClassifier, feature_names: list[str]) -> pd.DataFrame:
    """Impurity decrease per predictor summed over the ensemble's trees."""
    summed = np.zeros(len(feature_names), dtype=float)
    for tree in model.estimators_:
        summed += tree.tree_.compute_feature_importances(normalize=False)
    ranked = pd.DataFrame(
        {
            "feature": list(feature_names),
            "importance": summed,
            "importance_normalized": np.asarray(model.feature_importances_, dtype=float),
        }
    )
    ranked = ranked.sort_values("importance", ascending=False, kind="stable").reset_index(drop=True)
    ranked.insert(0, "rank", np.arange(1, len(ranked) + 1))
    return ranked


def plot_roc_curves(roc_points: pd.DataFrame, per_class_auc: dict[str, float], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(8, 7))
    for label, part in roc_points.groupby("class", sort=True):
        ax.plot(part["fpr"], part["tpr"], lw=2, label=f"{label} (AUC = {per_class_auc.get(str(label), float('nan')):.4f})")
    ax.plot([0, 1], [0, 1], "k--", lw=1, label="Random Chance")
    ax.set_xlabel("False Positive Rate")
    ax.set_ylabel("True Positive Rate")
    ax.set_title("One-vs-rest ROC curves (validation)")
    ax.legend(loc="lower right")
    ax.grid(alpha=0.3)
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def plot_confusion_matrix(confusion: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(6, 5))
    im = ax.imshow(confusion.to_numpy(), cmap="Blues")
    fig.colorbar(im, ax=ax)
    labels = [str(c) for c in confusion.columns]
    ax.set_xticks(range(len(labels)), labels=labels)
    ax.set_yticks(range(len(labels)), labels=labels)
    ax.set_xlabel("Predicted")
    ax.set_ylabel("True")
    vmax = confusion.to_numpy().max() if confusion.size else 0
    for i in range(confusion.shape[0]):
        for j in range(confusion.shape[1]):
            value = int(confusion.iat[i, j])
            ax.text(j, i, str(value), ha="center", va="center", color="white" if value > vmax / 2 else "black")
    ax.set_title("Confusion matrix (validation)")
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def plot_feature_importances(ranked: pd.DataFrame, path: Path, *, top_n: int = 20) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    top = ranked.head(top_n).iloc[::-1]
    fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * len(top) + 1)))
    ax.barh(top["feature"], top["importance_normalized"], color="steelblue")
    ax.set_xlabel("Mean decrease in impurity (normalized)")
    ax.set_title(f"Top {len(top)} predictors")
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def plot_correlation_matrix(corr: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    size = max(6, 0.18 * len(corr.columns) + 3)
    fig, ax = plt.subplots(figsize=(size, size))
    im = ax.imshow(corr.to_numpy(), cmap="RdBu_r", vmin=-1, vmax=1)
    fig.colorbar(im, ax=ax, shrink=0.8)
    ax.set_xticks(range(len(corr.columns)), labels=list(corr.columns), rotation=90, fontsize=6)
    ax.set_yticks(range(len(corr.index)), labels=list(corr.index), fontsize=6)
    ax.set_title("Predictor correlation (training partition)")
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path
