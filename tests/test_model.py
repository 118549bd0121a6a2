import os
import shutil

import joblib
import numpy as np
import pandas as pd
import pytest

from zestimate_model.model import (
    MODEL_LABELS,
    BackwardSelectedOLS,
    compare_models,
    compute_metrics,
    evaluate_baselines,
    evaluate_by_value_buckets,
    load_model_artifact,
    predict_log,
    predict_with_model,
)


def _selection_data(n=300, seed=0):
    """y depends on x1 and x2; n1..n3 carry exactly nothing once x1, x2 are known."""
    rng = np.random.default_rng(seed)
    X = pd.DataFrame(rng.normal(size=(n, 5)), columns=["x1", "x2", "n1", "n2", "n3"])

    design = np.column_stack([np.ones(n), X.to_numpy()])
    noise = rng.normal(0, 0.5, size=n)
    coef, *_ = np.linalg.lstsq(design, noise, rcond=None)
    residual = noise - design @ coef

    y = 1.0 + 2.0 * X["x1"] - 3.0 * X["x2"] + residual
    return X, y


def test_backward_selection_drops_uninformative_predictors():
    X, y = _selection_data()

    model = BackwardSelectedOLS(criterion="aic").fit(X, y)

    assert model.selected_features_ == ["x1", "x2"]
    assert sorted(model.dropped_features_) == ["n1", "n2", "n3"]
    assert model.history_["aic"].is_monotonic_decreasing
    assert model.results_.params["x1"] == pytest.approx(2.0)
    np.testing.assert_allclose(model.predict(X.head(3)), (1.0 + 2.0 * X["x1"] - 3.0 * X["x2"]).head(3), atol=0.2)


def test_backward_selection_bic_and_bad_criterion():
    X, y = _selection_data(seed=1)

    model = BackwardSelectedOLS(criterion="bic").fit(X, y)
    assert "bic" in model.history_.columns
    assert {"x1", "x2"} <= set(model.selected_features_)

    with pytest.raises(ValueError):
        BackwardSelectedOLS(criterion="r2")


def test_compute_metrics_dollar_space():
    perfect = compute_metrics([100000, 200000], [100000, 200000], verbose=False)
    assert perfect["r2"] == 1.0
    assert perfect["rmse"] == 0.0
    assert perfect["mape"] == 0.0

    metrics = compute_metrics(np.array([0.0, 100.0, 200.0]), np.array([10.0, 110.0, 180.0]), verbose=False)
    assert metrics["mape_excluded_count"] == 1
    assert metrics["mape"] == pytest.approx(10.0)
    assert metrics["mae"] == pytest.approx(40.0 / 3)


def test_baselines_use_train_medians_only():
    train = pd.DataFrame({"zipcode": ["A", "A", "A", "B"], "zestimate": [100.0, 200.0, 300.0, 1000.0]})
    test = pd.DataFrame({"zipcode": ["A", "B", "C"], "zestimate": [200.0, 1000.0, 250.0]})

    baselines = evaluate_baselines(train, test)

    assert baselines["baseline_zipcode_median"]["test"]["rmse"] == 0.0
    assert baselines["baseline_global_median"]["test"]["rmse"] > 0
    assert set(baselines["baseline_global_median"]) == {"test"}


def test_compare_models_ranks_by_test_rmse():
    def split(rmse):
        return {"r2": 0.5, "rmse": rmse, "mae": rmse / 2, "mape": 10.0}

    comparison = compare_models({
        "elastic_net": {"train": split(90), "test": split(120)},
        "gradient_boosting": {"train": split(50), "test": split(100)},
        "baseline_global_median": {"test": split(300)},
    })

    assert comparison["model"].tolist() == ["gradient_boosting", "elastic_net", "baseline_global_median"]
    assert comparison.loc[0, "label"] == MODEL_LABELS["gradient_boosting"]
    assert np.isnan(comparison.loc[2, "train_r2"])


def test_value_buckets():
    y_true = np.linspace(100000, 1000000, 100)
    buckets = evaluate_by_value_buckets(y_true, y_true * 1.1, n_buckets=5)

    assert buckets["bucket"].tolist() == ["Q1", "Q2", "Q3", "Q4", "Q5"]
    assert buckets["n_samples"].sum() == 100
    assert buckets["mape"].round(6).eq(10.0).all()


# ==================== FULL RUN ====================

def test_analysis_trains_and_ranks_all_models(trained):
    result, _ = trained

    assert set(result["models"]) == set(MODEL_LABELS)
    assert result["best_model"] in MODEL_LABELS
    assert len(result["comparison"]) == 5
    assert result["comparison"]["test_rmse"].is_monotonic_increasing

    best_rmse = result["metrics"][result["best_model"]]["test"]["rmse"]
    assert best_rmse < result["baselines"]["baseline_global_median"]["test"]["rmse"]


def test_feature_importance_per_model(trained):
    result, _ = trained
    importance = result["feature_importance"]

    assert set(importance["model"]) == set(MODEL_LABELS)
    linear = importance[importance["model"] == "linear_backward"]
    assert set(linear["feature"]) <= set(result["models"]["linear_backward"].selected_features_)
    assert importance.groupby("model")["importance"].apply(lambda s: s.is_monotonic_decreasing).all()


def test_report_files_written(trained):
    _, artifact_path = trained
    report_dir = artifact_path.parent / "report"

    for name in ("model_comparison.csv", "feature_importance.csv", "value_buckets.csv"):
        assert (report_dir / name).exists()
    assert (artifact_path.parent / "zestimate_model_gradient_boosting.cbm").exists()


def test_artifact_round_trip_predicts_the_same(trained):
    result, artifact_path = trained
    data = result["data"]

    artifact = load_model_artifact(str(artifact_path))

    assert set(artifact["models"]) == set(MODEL_LABELS)
    assert artifact["best_model"] == result["best_model"]
    for name, model in result["models"].items():
        expected = np.expm1(predict_log(name, model, data["X_test"], data["X_test_encoded"]))
        loaded = predict_with_model(artifact, data["X_test"], data["X_test_encoded"], model_name=name)
        np.testing.assert_allclose(loaded, np.maximum(0, expected), rtol=1e-6)


def test_unknown_model_raises(trained):
    _, artifact_path = trained
    artifact = load_model_artifact(str(artifact_path))
    data = trained[0]["data"]

    with pytest.raises(KeyError):
        predict_with_model(artifact, data["X_test"], data["X_test_encoded"], model_name="random_forest")


def test_artifact_can_be_moved_with_its_catboost_file(trained, tmp_path):
    _, artifact_path = trained
    cbm_name = "zestimate_model_gradient_boosting.cbm"
    shutil.copy(artifact_path.parent / cbm_name, tmp_path / cbm_name)

    artifact = joblib.load(artifact_path)
    artifact["model_paths"] = {"gradient_boosting": os.path.join("/nonexistent/models", cbm_name)}
    moved_path = tmp_path / "moved.pkl"
    joblib.dump(artifact, moved_path)

    loaded = load_model_artifact(str(moved_path))

    assert "gradient_boosting" in loaded["models"]
