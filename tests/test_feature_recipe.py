from __future__ import annotations

import dataclasses
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from activity_common import IDENTIFIER_COLS, OUTCOME_COL, PipelineConfig, SchemaMismatchError
from rf_standalone.feature_recipe import (
    FeatureRecipe,
    apply_recipe,
    find_correlated_columns,
    fit_recipe,
    load_recipe,
    near_zero_metrics,
    save_recipe,
)


def _frame(n: int = 500, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    a = rng.normal(0, 1, n)
    b = 0.95 * a + np.sqrt(1 - 0.95**2) * rng.normal(0, 1, n)
    nzv = np.zeros(n)
    nzv[:10] = 1.0
    return pd.DataFrame(
        {
            "user_name": rng.choice(["adelmo", "pedro"], n),
            "num_window": np.arange(n) // 10,
            "a": a,
            "b": b,
            "c": rng.normal(0, 1, n),
            "constant": np.full(n, 3.0),
            "rare": nzv,
            "note": ["x"] * n,
            OUTCOME_COL: pd.Categorical(np.resize(list("ABCDE"), n), categories=list("ABCDE")),
        }
    )


def test_identifiers_are_never_predictors():
    recipe = fit_recipe(_frame())
    assert set(recipe.predictor_cols).isdisjoint(IDENTIFIER_COLS)
    assert OUTCOME_COL not in recipe.predictor_cols
    assert recipe.identifier_cols == ("user_name", "num_window")


def test_zero_and_near_zero_variance_filters():
    recipe = fit_recipe(_frame())
    assert recipe.dropped_zero_variance == ("constant",)
    assert recipe.dropped_near_zero_variance == ("rare",)
    assert recipe.excluded_non_numeric == ("note",)
    stats = {col: (ratio, pct) for col, ratio, pct in recipe.near_zero_stats}
    assert stats["rare"][0] == pytest.approx(49.0)


def test_correlated_pair_loses_exactly_one_column():
    df = _frame()
    assert abs(df["a"].corr(df["b"])) > 0.9
    recipe = fit_recipe(df)
    assert len(recipe.dropped_high_correlation) == 1
    assert recipe.dropped_high_correlation[0] in {"a", "b"}
    assert "c" in recipe.predictor_cols
    assert len({"a", "b"} & set(recipe.predictor_cols)) == 1


def test_correlation_cutoff_is_configurable():
    recipe = fit_recipe(_frame(), config=PipelineConfig(corr_cutoff=0.99))
    assert recipe.dropped_high_correlation == ()
    assert {"a", "b", "c"} <= set(recipe.predictor_cols)


def test_find_correlated_columns_drops_hub_column():
    rng = np.random.default_rng(3)
    base = rng.normal(0, 1, 400)
    df = pd.DataFrame(
        {
            "x1": base + rng.normal(0, 0.2, 400),
            "hub": base,
            "x2": base + rng.normal(0, 0.2, 400),
            "free": rng.normal(0, 1, 400),
        }
    )
    dropped = find_correlated_columns(df, list(df.columns), cutoff=0.9)
    assert "hub" in dropped
    assert "free" not in dropped
    assert len(dropped) == 2


def test_near_zero_metrics():
    ratio, pct = near_zero_metrics(pd.Series([0, 0, 0, 0, 1, np.nan]))
    assert ratio == pytest.approx(4.0)
    assert pct == pytest.approx(100 * 2 / 6)
    assert near_zero_metrics(pd.Series([5, 5, 5])) == (0.0, pytest.approx(100 / 3))


def test_apply_recipe_reproduces_predictor_order():
    train = _frame(seed=0)
    recipe = fit_recipe(train)
    other = _frame(n=50, seed=9)
    shuffled = other[list(reversed(other.columns))]

    out = apply_recipe(recipe, shuffled)
    predictors_out = [c for c in out.columns if c in recipe.predictor_cols]
    assert tuple(predictors_out) == recipe.predictor_cols
    assert list(out.columns[: len(recipe.identifier_cols)]) == list(recipe.identifier_cols)
    for dropped in recipe.dropped_cols:
        assert dropped not in out.columns


def test_apply_recipe_passes_unknown_columns_through():
    recipe = fit_recipe(_frame())
    scoring = _frame(n=20, seed=5).drop(columns=[OUTCOME_COL])
    scoring["problem_id"] = np.arange(1, 21)
    out = apply_recipe(recipe, scoring)
    assert OUTCOME_COL not in out.columns
    assert out.columns[-1] == "problem_id"
    assert out["problem_id"].tolist() == list(range(1, 21))


def test_apply_recipe_missing_predictor_raises():
    recipe = fit_recipe(_frame())
    scoring = _frame(n=20).drop(columns=["c"])
    with pytest.raises(SchemaMismatchError, match="'c'"):
        apply_recipe(recipe, scoring)


def test_apply_recipe_does_not_refit():
    train = _frame(seed=0)
    recipe = fit_recipe(train)
    other = _frame(n=60, seed=2)
    other["constant"] = np.arange(60, dtype=float)
    out = apply_recipe(recipe, other)
    assert "constant" not in out.columns


def test_recipe_is_immutable_and_serializable(tmp_path: Path):
    recipe = fit_recipe(_frame())
    with pytest.raises(dataclasses.FrozenInstanceError):
        recipe.predictor_cols = ("a",)  # type: ignore[misc]

    path = tmp_path / "recipe.json"
    save_recipe(path, recipe)
    assert load_recipe(path) == recipe


def test_recipe_rejects_unknown_version():
    payload = fit_recipe(_frame()).to_dict()
    payload["format_version"] = 99
    with pytest.raises(ValueError):
        FeatureRecipe.from_dict(payload)


def test_fit_recipe_fails_without_predictors():
    df = pd.DataFrame({"user_name": ["a", "b"], "k": [1.0, 1.0], OUTCOME_COL: ["A", "B"]})
    with pytest.raises(SchemaMismatchError):
        fit_recipe(df)


def test_near_zero_variance_unique_cut_is_inclusive():
    rng = np.random.default_rng(1)
    values = np.concatenate([np.zeros(91), np.arange(1.0, 10.0)])
    df = pd.DataFrame(
        {
            "borderline": values,
            "a": rng.normal(0, 1, 100),
            OUTCOME_COL: np.resize(list("ABCDE"), 100),
        }
    )
    ratio, pct = near_zero_metrics(df["borderline"])
    assert ratio == pytest.approx(91.0)
    assert pct == pytest.approx(10.0)

    recipe = fit_recipe(df)
    assert recipe.dropped_near_zero_variance == ("borderline",)
    assert recipe.predictor_cols == ("a",)
