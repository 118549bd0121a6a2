"""
Model validation and sanity checks
"""
import sys

import numpy as np

from zestimate_model.collection import load_checkpoint
from zestimate_model.model import (
    MODEL_LABELS,
    compute_metrics,
    evaluate_baselines,
    load_model_artifact,
    predict_with_model,
)
from zestimate_model.preprocessing import run_full_preprocessing_pipeline
from zestimate_model.settings import settings

print("=" * 80)
print("MODEL VALIDATION & SANITY CHECKS")
print("=" * 80)

checkpoint_path = sys.argv[1] if len(sys.argv) > 1 else settings.checkpoint_path
artifact_path = sys.argv[2] if len(sys.argv) > 2 else settings.artifact_path

# Load data
df = load_checkpoint(checkpoint_path)
print(f"\nCollected rows: {len(df):,}")
print(f"Successful calls: {(df['status_code'] == 0).sum():,}")

# Load model artifact
artifact = load_model_artifact(str(artifact_path))
metadata = artifact['preprocessing_metadata']

# Recreate the same split
results = run_full_preprocessing_pipeline(
    df,
    keep_use_codes=metadata['keep_use_codes'],
    test_size=metadata['test_size'],
    random_seed=metadata['random_seed']
)

# CHECK 1: Baseline models
print("\n" + "=" * 80)
print("CHECK 1: BASELINE MODELS")
print("=" * 80)

baselines = evaluate_baselines(results['train_df'], results['test_df'])
best_baseline_rmse = min(b['test']['rmse'] for b in baselines.values())

# CHECK 2: Every model beats the baselines on the same test set
print("\n" + "=" * 80)
print("CHECK 2: MODELS VS BASELINES")
print("=" * 80)

y_test = np.expm1(results['y_test'].to_numpy())
for name in artifact['models']:
    y_pred = predict_with_model(artifact, results['X_test'], results['X_test_encoded'], model_name=name)
    metrics = compute_metrics(y_test, y_pred, MODEL_LABELS.get(name, name), verbose=False)
    verdict = "OK" if metrics['rmse'] < best_baseline_rmse else "WORSE THAN BASELINE"
    print(f"{MODEL_LABELS.get(name, name):<42} RMSE={metrics['rmse']:,.0f}  R²={metrics['r2']:.4f}  [{verdict}]")

# CHECK 3: Stored metrics match a fresh evaluation
print("\n" + "=" * 80)
print("CHECK 3: STORED VS RECOMPUTED TEST RMSE")
print("=" * 80)

for name in artifact['models']:
    stored = artifact['metrics'][name]['test']['rmse']
    y_pred = predict_with_model(artifact, results['X_test'], results['X_test_encoded'], model_name=name)
    fresh = compute_metrics(y_test, y_pred, verbose=False)['rmse']
    status = "OK" if np.isclose(stored, fresh, rtol=1e-6) else "MISMATCH (data changed since training?)"
    print(f"{MODEL_LABELS.get(name, name):<42} stored={stored:,.0f}  fresh={fresh:,.0f}  [{status}]")

# CHECK 4: Predictions are positive and in a sane range
print("\n" + "=" * 80)
print("CHECK 4: PREDICTION RANGE")
print("=" * 80)

best = artifact['best_model']
y_pred = predict_with_model(artifact, results['X_test'], results['X_test_encoded'])
print(f"Best model: {MODEL_LABELS.get(best, best)}")
print(f"  Predicted range: ${y_pred.min():,.0f} - ${y_pred.max():,.0f}")
print(f"  Actual range:    ${y_test.min():,.0f} - ${y_test.max():,.0f}")
print(f"  Non-positive predictions: {(y_pred <= 0).sum()}")

print("\n" + "=" * 80)
print("VALIDATION COMPLETE")
print("=" * 80)
