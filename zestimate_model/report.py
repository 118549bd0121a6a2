"""
End-to-end analysis: collected valuations in, model comparison out.
"""

import os
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .model import (
    MODEL_LABELS,
    compare_models,
    evaluate_baselines,
    evaluate_by_value_buckets,
    evaluate_models,
    get_feature_importance,
    predict_log,
    save_model_artifact,
    train_all_models,
)
from .preprocessing import DEFAULT_RESIDENTIAL_USE_CODES, run_full_preprocessing_pipeline


def run_analysis(
    valuations: pd.DataFrame,
    artifact_path: Optional[str] = None,
    output_dir: Optional[str] = None,
    keep_use_codes: Optional[List[str]] = DEFAULT_RESIDENTIAL_USE_CODES,
    test_size: float = 0.20,
    random_seed: int = 42,
    gbm_hyperparameters: Dict[str, Any] = None,
    criterion: str = 'aic'
) -> Dict[str, Any]:
    """
    Run the whole study on a collection checkpoint.

    Steps:
    1. Preprocess (clean, split, impute, features, encoding)
    2. Train the three models
    3. Evaluate them and the naive baselines on the test set
    4. Rank them, collect feature importance
    5. Write model_comparison.csv / feature_importance.csv and the artifact

    Args:
        valuations: Checkpoint frame from zestimate_model.collection
        artifact_path: Where to save the model artifact (skipped if None)
        output_dir: Where to write the report CSVs (skipped if None)
        keep_use_codes: Use codes to keep (default: residential, None keeps all)
        test_size: Test set fraction
        random_seed: Seed for split, imputer and models
        gbm_hyperparameters: CatBoost overrides
        criterion: Backward selection criterion ('aic' or 'bic')

    Returns:
        Dictionary with models, metrics, baselines, comparison, feature_importance,
        best_model and the preprocessing output
    """
    data = run_full_preprocessing_pipeline(
        valuations,
        keep_use_codes=keep_use_codes,
        test_size=test_size,
        random_seed=random_seed
    )

    models = train_all_models(
        data['X_train'], data['X_train_encoded'], data['y_train'],
        categorical_indices=data['categorical_indices'],
        random_seed=random_seed,
        gbm_hyperparameters=gbm_hyperparameters,
        criterion=criterion
    )

    metrics = evaluate_models(
        models,
        data['X_train'], data['X_train_encoded'], data['y_train'],
        data['X_test'], data['X_test_encoded'], data['y_test']
    )
    baselines = evaluate_baselines(data['train_df'], data['test_df'])

    comparison = compare_models({**metrics, **baselines})
    best_model = comparison[comparison['model'].isin(list(models))].iloc[0]['model']

    feature_importance = pd.concat(
        [get_feature_importance(model, name) for name, model in models.items()],
        ignore_index=True
    )

    best_test_pred = np.expm1(predict_log(
        best_model, models[best_model], data['X_test'], data['X_test_encoded']
    ))
    value_buckets = evaluate_by_value_buckets(np.expm1(data['y_test']), best_test_pred)

    print(f"\nBest model: {MODEL_LABELS[best_model]}")
    print("Test error by value bucket:")
    print(value_buckets.to_string(index=False))
    top = feature_importance[feature_importance['model'] == best_model].head(5)
    print("Top features:")
    for _, row in top.iterrows():
        print(f"  {row['feature']:<28} {row['importance']:.4f}")

    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        comparison.to_csv(os.path.join(output_dir, 'model_comparison.csv'), index=False)
        feature_importance.to_csv(os.path.join(output_dir, 'feature_importance.csv'), index=False)
        value_buckets.to_csv(os.path.join(output_dir, 'value_buckets.csv'), index=False)
        print(f"\nReport written to: {output_dir}")

    if artifact_path is not None:
        save_model_artifact(
            models,
            data['preprocessing_metadata'],
            metrics,
            comparison,
            feature_importance,
            artifact_path,
            best_model=best_model
        )

    return {
        'models': models,
        'metrics': metrics,
        'baselines': baselines,
        'comparison': comparison,
        'feature_importance': feature_importance,
        'best_model': best_model,
        'value_buckets': value_buckets,
        'data': data,
    }
