from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from activity_common import CLASS_LABELS, DegenerateFoldError, SearchTimeoutError
from conftest import make_numeric_frame
from rf_standalone.grid_search import build_param_grid, run_grid_search


def test_build_param_grid_default_levels():
    grid = build_param_grid(30)
    assert len(grid) == 25
    assert grid[0] == {"max_features": 1, "min_samples_leaf": 2}
    assert grid[-1] == {"max_features": 30, "min_samples_leaf": 40}
    assert sorted({g["min_samples_leaf"] for g in grid}) == [2, 12, 21, 30, 40]


def test_build_param_grid_clips_to_predictor_count():
    grid = build_param_grid(3, levels=5, min_leaf_range=(1, 5))
    max_features = [g["max_features"] for g in grid]
    assert max(max_features) == 3
    assert sorted(set(max_features)) == [1, 2, 3]
    assert len(grid) == 3 * 5


def test_build_param_grid_outer_axis_is_max_features():
    grid = build_param_grid(10, levels=2, min_leaf_range=(2, 8))
    assert grid == [
        {"max_features": 1, "min_samples_leaf": 2},
        {"max_features": 1, "min_samples_leaf": 8},
        {"max_features": 10, "min_samples_leaf": 2},
        {"max_features": 10, "min_samples_leaf": 8},
    ]


def test_grid_5x5_over_5_folds_is_deterministic():
    x, y = make_numeric_frame(n_per_class=30, n_features=6)
    grid = build_param_grid(x.shape[1], levels=5, min_leaf_range=(2, 40))
    assert len(grid) == 25

    kwargs = dict(classes=CLASS_LABELS, cv_folds=5, n_estimators=8, random_state=7, n_jobs=2)
    first = run_grid_search(x, y, grid, **kwargs)
    second = run_grid_search(x, y, grid, **kwargs)

    assert first.fold_scores.shape == (25, 5)
    assert len(first.mean_scores) == 25
    assert not np.isnan(first.fold_scores).any()
    assert first.best_index == second.best_index
    np.testing.assert_allclose(first.fold_scores, second.fold_scores)


def test_selected_combination_is_the_argmax():
    x, y = make_numeric_frame(n_per_class=20, n_features=4, seed=3)
    grid = build_param_grid(x.shape[1], levels=3, min_leaf_range=(1, 20))
    result = run_grid_search(x, y, grid, classes=CLASS_LABELS, cv_folds=3, n_estimators=6, random_state=1, n_jobs=1)

    assert result.best_score == pytest.approx(result.mean_scores.max())
    assert result.best_index == int(np.flatnonzero(result.mean_scores == result.mean_scores.max())[0])
    assert result.best_params == grid[result.best_index]

    frame = result.to_frame()
    assert len(frame) == len(grid)
    assert frame["selected"].sum() == 1
    assert frame.loc[frame["selected"], "grid_position"].item() == result.best_index


def test_ties_resolve_to_first_grid_position():
    x, y = make_numeric_frame(n_per_class=10, n_features=2, seed=4)
    x = x * 0.0
    grid = [{"max_features": 1, "min_samples_leaf": 1}, {"max_features": 2, "min_samples_leaf": 1}]
    result = run_grid_search(x, y, grid, classes=CLASS_LABELS, cv_folds=2, n_estimators=3, random_state=0, n_jobs=1)
    np.testing.assert_allclose(result.mean_scores, [0.5, 0.5])
    assert result.best_index == 0


def test_rare_class_is_reported_as_degenerate_fold():
    x, y = make_numeric_frame(n_per_class=10, n_features=3)
    keep = ~((y == "E") & (y.groupby(y).cumcount() >= 3))
    x, y = x[keep.to_numpy()].reset_index(drop=True), y[keep].reset_index(drop=True)
    grid = build_param_grid(3, levels=1)
    with pytest.raises(DegenerateFoldError, match="'E'"):
        run_grid_search(x, y, grid, classes=CLASS_LABELS, cv_folds=5, n_estimators=3, n_jobs=1)


def test_missing_class_is_reported_as_degenerate_fold():
    x, y = make_numeric_frame(n_per_class=10, n_features=3)
    keep = (y != "D").to_numpy()
    with pytest.raises(DegenerateFoldError):
        run_grid_search(
            x[keep].reset_index(drop=True),
            y[keep].reset_index(drop=True),
            build_param_grid(3, levels=1),
            classes=CLASS_LABELS,
            cv_folds=3,
            n_estimators=3,
            n_jobs=1,
        )


def test_search_deadline():
    x, y = make_numeric_frame(n_per_class=20, n_features=4)
    grid = build_param_grid(4, levels=3, min_leaf_range=(1, 5))
    with pytest.raises(SearchTimeoutError):
        run_grid_search(
            x,
            y,
            grid,
            classes=CLASS_LABELS,
            cv_folds=3,
            n_estimators=20,
            n_jobs=1,
            timeout_seconds=1e-6,
        )


def test_empty_grid_rejected():
    x, y = make_numeric_frame(n_per_class=5, n_features=2)
    with pytest.raises(ValueError):
        run_grid_search(x, pd.Series(y), [], classes=CLASS_LABELS, cv_folds=2)
