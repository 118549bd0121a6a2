"""
Model Training Module for the Zestimate study

This module handles:
1. The three competing models (backward-selected OLS, elastic net, CatBoost)
2. Model evaluation metrics (R², RMSE, MAE, MAPE) and the model comparison table
3. Naive baselines (global and ZIP-code median) for sanity checks
4. Model artifact serialization

Key Technical Decisions:
- Target: log1p(zestimate) (handles right-skewed distribution); metrics in dollars
- Linear models see one-hot encoded categoricals; CatBoost uses them natively
- Backward selection by AIC, like stepwise regression in classic statistics packages
- Elastic net mixing and penalty chosen by k-fold cross-validation on train
- Fixed random seed for reproducibility
"""

import os
from typing import Any, Dict, List, Optional, Sequence

import joblib
import numpy as np
import pandas as pd
import statsmodels.api as sm
from catboost import CatBoostRegressor, Pool
from sklearn.linear_model import ElasticNetCV
from sklearn.metrics import mean_absolute_error, mean_absolute_percentage_error, mean_squared_error, r2_score
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler
import warnings
warnings.filterwarnings('ignore')


MODEL_LABELS = {
    'linear_backward': 'Linear regression (backward selection)',
    'elastic_net': 'Elastic net',
    'gradient_boosting': 'Gradient-boosted trees (CatBoost)',
}

# Models fitted on the one-hot encoded matrix
ENCODED_INPUT_MODELS = ('linear_backward', 'elastic_net')


class BackwardSelectedOLS:
    """
    Ordinary least squares with backward elimination.

    Starting from every predictor, each step refits the model once per remaining
    predictor with that predictor left out, and drops the one whose removal
    lowers the information criterion the most. Elimination stops when no single
    removal lowers it. The intercept is always kept.

    Attributes (after fit):
        selected_features_: Predictors in the final model, in input order
        dropped_features_: Predictors eliminated, in elimination order
        history_: DataFrame with one row per step (dropped predictor, criterion)
        results_: Final statsmodels RegressionResults
    """

    def __init__(self, criterion: str = 'aic', min_features: int = 1):
        if criterion not in ('aic', 'bic'):
            raise ValueError(f"criterion must be 'aic' or 'bic', got {criterion!r}")
        self.criterion = criterion
        self.min_features = min_features

    @staticmethod
    def _design(X: pd.DataFrame, features: List[str]) -> pd.DataFrame:
        design = X[features].astype(float).copy()
        design.insert(0, 'const', 1.0)
        return design

    def _fit_ols(self, X: pd.DataFrame, y: pd.Series, features: List[str]):
        return sm.OLS(y, self._design(X, features)).fit()

    def _score(self, results) -> float:
        return float(getattr(results, self.criterion))

    def fit(self, X: pd.DataFrame, y) -> "BackwardSelectedOLS":
        y = pd.Series(np.asarray(y, dtype=float), index=X.index)
        features = list(X.columns)

        results = self._fit_ols(X, y, features)
        score = self._score(results)
        history = [{'step': 0, 'dropped': None, self.criterion: score, 'n_features': len(features)}]
        dropped = []

        while len(features) > self.min_features:
            best_feature, best_score, best_results = None, None, None
            for feature in features:
                candidate = [f for f in features if f != feature]
                candidate_results = self._fit_ols(X, y, candidate)
                candidate_score = self._score(candidate_results)
                if best_score is None or candidate_score < best_score:
                    best_feature, best_score, best_results = feature, candidate_score, candidate_results

            if best_score >= score:
                break

            features.remove(best_feature)
            dropped.append(best_feature)
            score, results = best_score, best_results
            history.append({'step': len(dropped), 'dropped': best_feature,
                            self.criterion: score, 'n_features': len(features)})

        self.selected_features_ = features
        self.dropped_features_ = dropped
        self.history_ = pd.DataFrame(history)
        self.results_ = results
        return self

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        return np.asarray(self.results_.predict(self._design(X, self.selected_features_)))

    def summary(self):
        return self.results_.summary()


def train_linear_model(
    X_train: pd.DataFrame,
    y_train: pd.Series,
    criterion: str = 'aic'
) -> BackwardSelectedOLS:
    """
    Fit OLS on the encoded features and eliminate predictors backwards.

    Args:
        X_train: One-hot encoded training features
        y_train: Training target (log-transformed)
        criterion: 'aic' (default) or 'bic'

    Returns:
        Fitted BackwardSelectedOLS
    """
    print("=" * 80)
    print(f"TRAINING LINEAR REGRESSION - backward selection by {criterion.upper()}")
    print("=" * 80)
    print(f"Starting predictors: {X_train.shape[1]}")

    model = BackwardSelectedOLS(criterion=criterion).fit(X_train, y_train)

    for _, step in model.history_.iloc[1:].iterrows():
        print(f"  Step {int(step['step'])}: dropped {step['dropped']:<28} {criterion.upper()} = {step[criterion]:.2f}")

    print(f"\nKept {len(model.selected_features_)} of {X_train.shape[1]} predictors")
    print(f"Final {criterion.upper()}: {model.history_[criterion].iloc[-1]:.2f}")
    print(f"Adjusted R² (log-space): {model.results_.rsquared_adj:.4f}")

    return model


def train_elastic_net(
    X_train: pd.DataFrame,
    y_train: pd.Series,
    l1_ratios: Sequence[float] = (0.1, 0.5, 0.7, 0.9, 0.95, 0.99, 1.0),
    cv: int = 5,
    random_seed: int = 42
) -> Pipeline:
    """
    Standardize, then fit an elastic net with penalty and mixing chosen by CV.

    Standardization matters here: the penalty treats every coefficient alike,
    so predictors must be on a common scale.

    Args:
        X_train: One-hot encoded training features
        y_train: Training target (log-transformed)
        l1_ratios: Mixing values to search (1.0 = lasso)
        cv: Number of cross-validation folds
        random_seed: Seed for the coordinate-descent shuffling

    Returns:
        Fitted sklearn Pipeline (scaler -> ElasticNetCV)
    """
    print("=" * 80)
    print("TRAINING ELASTIC NET")
    print("=" * 80)

    cv = max(2, min(cv, len(X_train)))
    model = Pipeline([
        ('scaler', StandardScaler()),
        ('elastic_net', ElasticNetCV(
            l1_ratio=list(l1_ratios),
            cv=cv,
            max_iter=10000,
            random_state=random_seed
        ))
    ])
    model.fit(X_train, y_train)

    enet = model.named_steps['elastic_net']
    nonzero = int(np.sum(enet.coef_ != 0))
    print(f"CV folds: {cv}")
    print(f"Best alpha: {enet.alpha_:.6f}")
    print(f"Best l1_ratio: {enet.l1_ratio_}")
    print(f"Non-zero coefficients: {nonzero} / {len(enet.coef_)}")

    return model


def train_gradient_boosting(
    X_train: pd.DataFrame,
    y_train: pd.Series,
    categorical_indices: List[int],
    hyperparameters: Dict[str, Any] = None,
    random_seed: int = 42
) -> CatBoostRegressor:
    """
    Train CatBoost regression model with RMSE loss.

    CatBoost advantages:
    - Handles categorical features natively (no one-hot encoding needed)
    - Built-in handling for unseen categories (ZIP codes missing from train)
    - Strong defaults on small tabular samples

    Args:
        X_train: Training features (native categoricals)
        y_train: Training target (log-transformed)
        categorical_indices: List of categorical feature column indices
        hyperparameters: Custom hyperparameters (if None, use defaults)
        random_seed: Random seed for reproducibility

    Returns:
        Trained CatBoostRegressor model
    """
    if hyperparameters is None:
        hyperparameters = {
            'iterations': 1000,
            'learning_rate': 0.03,
            'depth': 6,
            'l2_leaf_reg': 3,
            'loss_function': 'RMSE',
            'random_seed': random_seed,
            'verbose': 200,
        }

    print("=" * 80)
    print("TRAINING CATBOOST MODEL")
    print("=" * 80)
    print(f"\nHyperparameters:")
    for key, value in hyperparameters.items():
        print(f"  {key}: {value}")
    print(f"\nCategorical features: {len(categorical_indices)} columns")

    train_pool = Pool(
        data=X_train,
        label=y_train,
        cat_features=categorical_indices
    )

    model = CatBoostRegressor(**hyperparameters)
    model.fit(train_pool)

    print(f"\nTrees built: {model.tree_count_}")

    return model


def train_all_models(
    X_train: pd.DataFrame,
    X_train_encoded: pd.DataFrame,
    y_train: pd.Series,
    categorical_indices: List[int],
    random_seed: int = 42,
    gbm_hyperparameters: Dict[str, Any] = None,
    criterion: str = 'aic'
) -> Dict[str, Any]:
    """
    Train the three competing models.

    Returns:
        {'linear_backward': ..., 'elastic_net': ..., 'gradient_boosting': ...}
    """
    models = {}

    print("\n[1/3] Training LINEAR REGRESSION...")
    models['linear_backward'] = train_linear_model(X_train_encoded, y_train, criterion=criterion)

    print("\n[2/3] Training ELASTIC NET...")
    models['elastic_net'] = train_elastic_net(X_train_encoded, y_train, random_seed=random_seed)

    print("\n[3/3] Training GRADIENT-BOOSTED TREES...")
    models['gradient_boosting'] = train_gradient_boosting(
        X_train, y_train,
        categorical_indices=categorical_indices,
        hyperparameters=gbm_hyperparameters,
        random_seed=random_seed
    )

    print("\n" + "=" * 80)
    print("ALL MODELS TRAINED SUCCESSFULLY")
    print("=" * 80)

    return models


def compute_metrics(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    dataset_name: str = "Dataset",
    safe_mape_threshold: float = 1.0,
    verbose: bool = True
) -> Dict[str, float]:
    """
    Compute regression metrics in DOLLAR space.

    Metrics:
    - R² Score: Proportion of variance explained (higher is better, max 1.0)
    - RMSE: Root mean squared error in dollars (lower is better, ranks the models)
    - MAE: Mean Absolute Error in dollars (lower is better)
    - MAPE: Mean Absolute Percentage Error (lower is better, interpret carefully)

    MAPE Safety: Skip rows where y_true <= threshold to avoid division issues.

    Args:
        y_true: True values (dollars, NOT log)
        y_pred: Predicted values (dollars, NOT log)
        dataset_name: Name for printing (e.g., "Train", "Test")
        safe_mape_threshold: Minimum y_true value for MAPE computation
        verbose: Print the metrics

    Returns:
        Dictionary with metrics
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)

    r2 = r2_score(y_true, y_pred)
    rmse = float(np.sqrt(mean_squared_error(y_true, y_pred)))
    mae = mean_absolute_error(y_true, y_pred)

    valid_mask = y_true > safe_mape_threshold
    if valid_mask.sum() > 0:
        mape = mean_absolute_percentage_error(y_true[valid_mask], y_pred[valid_mask]) * 100
        mape_excluded = int(len(y_true) - valid_mask.sum())
    else:
        mape = np.nan
        mape_excluded = len(y_true)

    metrics = {
        'r2': float(r2),
        'rmse': rmse,
        'mae': float(mae),
        'mape': float(mape),
        'mape_excluded_count': mape_excluded
    }

    if verbose:
        print(f"\n{'=' * 80}")
        print(f"{dataset_name.upper()} METRICS (Dollar Space)")
        print(f"{'=' * 80}")
        print(f"R² Score:  {r2:.4f}")
        print(f"RMSE:      {rmse:,.2f}")
        print(f"MAE:       {mae:,.2f}")
        if not np.isnan(mape):
            print(f"MAPE:      {mape:.2f}% (excluded {mape_excluded} rows with y_true <= {safe_mape_threshold})")
        else:
            print(f"MAPE:      Not computable (all values <= {safe_mape_threshold})")

    return metrics


def predict_log(model_name: str, model: Any, X: pd.DataFrame, X_encoded: pd.DataFrame) -> np.ndarray:
    """Predict in log space, feeding each model the matrix it was trained on."""
    if model_name in ENCODED_INPUT_MODELS:
        return np.asarray(model.predict(X_encoded), dtype=float)
    return np.asarray(model.predict(X), dtype=float)


def evaluate_models(
    models: Dict[str, Any],
    X_train: pd.DataFrame,
    X_train_encoded: pd.DataFrame,
    y_train: pd.Series,
    X_test: pd.DataFrame,
    X_test_encoded: pd.DataFrame,
    y_test: pd.Series
) -> Dict[str, Dict[str, Dict[str, float]]]:
    """
    Evaluate every model on train and test sets in dollar space.

    Args:
        models: Output of train_all_models
        X_train, X_train_encoded, y_train: Training data (y in log-space)
        X_test, X_test_encoded, y_test: Test data (y in log-space)

    Returns:
        {model_name: {'train': metrics, 'test': metrics}}
    """
    print("\n" + "=" * 80)
    print("EVALUATING MODELS")
    print("=" * 80)

    y_train_true = np.expm1(np.asarray(y_train, dtype=float))
    y_test_true = np.expm1(np.asarray(y_test, dtype=float))

    results = {}
    for name, model in models.items():
        label = MODEL_LABELS.get(name, name)
        y_train_pred = np.expm1(predict_log(name, model, X_train, X_train_encoded))
        y_test_pred = np.expm1(predict_log(name, model, X_test, X_test_encoded))
        results[name] = {
            'train': compute_metrics(y_train_true, y_train_pred, f"{label} - Train"),
            'test': compute_metrics(y_test_true, y_test_pred, f"{label} - Test"),
        }

    return results


def compare_models(results: Dict[str, Dict[str, Dict[str, float]]]) -> pd.DataFrame:
    """
    Rank models by test RMSE (dollars).

    Args:
        results: Output of evaluate_models (baselines may be merged in)

    Returns:
        DataFrame, best model first
    """
    rows = []
    for name, splits in results.items():
        test = splits['test']
        train = splits.get('train', {})
        rows.append({
            'model': name,
            'label': MODEL_LABELS.get(name, name),
            'train_r2': train.get('r2', np.nan),
            'test_r2': test['r2'],
            'test_rmse': test['rmse'],
            'test_mae': test['mae'],
            'test_mape': test['mape'],
        })

    comparison = pd.DataFrame(rows).sort_values('test_rmse').reset_index(drop=True)

    print("\n" + "=" * 80)
    print("MODEL COMPARISON (ranked by test RMSE)")
    print("=" * 80)
    for rank, row in comparison.iterrows():
        print(f"{rank + 1}. {row['label']:<42} R²={row['test_r2']:.4f}  RMSE={row['test_rmse']:,.0f}  "
              f"MAE={row['test_mae']:,.0f}  MAPE={row['test_mape']:.2f}%")

    return comparison


def evaluate_baselines(
    train_df: pd.DataFrame,
    test_df: pd.DataFrame,
    target_col: str = 'zestimate',
    group_col: str = 'zipcode'
) -> Dict[str, Dict[str, Dict[str, float]]]:
    """
    Naive baselines every model should beat.

    1. Global median of the training Zestimates
    2. ZIP-code median (global median for ZIP codes unseen in train)

    Returns:
        Same shape as evaluate_models, keyed 'baseline_global_median' and
        'baseline_zipcode_median'
    """
    y_test = test_df[target_col].to_numpy(dtype=float)
    global_median = train_df[target_col].median()

    baseline_global = np.full(len(y_test), global_median)
    group_medians = train_df.groupby(group_col)[target_col].median()
    baseline_group = test_df[group_col].map(group_medians).fillna(global_median).to_numpy(dtype=float)

    return {
        'baseline_global_median': {
            'test': compute_metrics(y_test, baseline_global, "Global Median Baseline - Test")
        },
        'baseline_zipcode_median': {
            'test': compute_metrics(y_test, baseline_group, "ZIP Median Baseline - Test")
        },
    }


def get_feature_importance(
    model: Any,
    model_name: str,
    top_n: int = 20
) -> pd.DataFrame:
    """
    Extract feature importance on each model's own terms.

    - gradient_boosting: CatBoost PredictionValuesChange
    - elastic_net: absolute standardized coefficient
    - linear_backward: absolute t-value of the kept predictors

    Args:
        model: Trained model
        model_name: Key from train_all_models
        top_n: Number of top features to return

    Returns:
        DataFrame with features sorted by importance
    """
    if model_name == 'gradient_boosting':
        importance_df = pd.DataFrame({
            'feature': model.feature_names_,
            'importance': model.get_feature_importance(),
        })
    elif model_name == 'elastic_net':
        enet = model.named_steps['elastic_net']
        importance_df = pd.DataFrame({
            'feature': list(model.feature_names_in_),
            'importance': np.abs(enet.coef_),
            'coefficient': enet.coef_,
        })
    elif model_name == 'linear_backward':
        params = model.results_.params.drop('const')
        tvalues = model.results_.tvalues.drop('const')
        importance_df = pd.DataFrame({
            'feature': params.index,
            'importance': np.abs(tvalues.to_numpy()),
            'coefficient': params.to_numpy(),
        })
    else:
        raise ValueError(f"Unknown model: {model_name}")

    importance_df.insert(0, 'model', model_name)
    importance_df = importance_df.sort_values('importance', ascending=False)
    return importance_df.head(top_n).reset_index(drop=True)


def save_model_artifact(
    models: Dict[str, Any],
    preprocessing_metadata: Dict[str, Any],
    metrics: Dict[str, Dict[str, Dict[str, float]]],
    comparison: pd.DataFrame,
    feature_importance: pd.DataFrame,
    save_path: str,
    best_model: str = None
) -> None:
    """
    Save complete model artifact.

    The artifact contains EVERYTHING needed for inference:
    - The backward-selected OLS and elastic net (pickled in the artifact)
    - The CatBoost model (its own .cbm file next to the artifact)
    - Preprocessing metadata (imputer, reference date, encoding, feature order)
    - Feature importance, metrics and the comparison table
    - The name of the best model (lowest test RMSE among the three)

    Args:
        models: Output of train_all_models
        preprocessing_metadata: From preprocessing pipeline
        metrics: Output of evaluate_models
        comparison: Output of compare_models
        feature_importance: Concatenated get_feature_importance frames
        save_path: Path to save artifact (e.g., 'models/zestimate_model.pkl')
        best_model: Override the best model name
    """
    model_dir = os.path.dirname(os.path.abspath(save_path))
    model_filename = os.path.splitext(os.path.basename(save_path))[0]
    os.makedirs(model_dir, exist_ok=True)

    if best_model is None:
        ranked = comparison[comparison['model'].isin(list(models))]
        best_model = ranked.iloc[0]['model']

    model_paths = {}
    if 'gradient_boosting' in models:
        model_path = os.path.join(model_dir, f"{model_filename}_gradient_boosting.cbm")
        models['gradient_boosting'].save_model(model_path)
        model_paths['gradient_boosting'] = model_path

    artifact = {
        'models': {name: model for name, model in models.items() if name not in model_paths},
        'model_paths': model_paths,
        'preprocessing_metadata': preprocessing_metadata,
        'feature_importance': feature_importance,
        'metrics': metrics,
        'comparison': comparison,
        'best_model': best_model,
        'model_version': '1.0',
        'trained_at': pd.Timestamp.now()
    }

    joblib.dump(artifact, save_path)

    print("\n" + "=" * 80)
    print("MODEL ARTIFACT SAVED")
    print("=" * 80)
    print(f"Artifact file: {save_path}")
    print(f"  Size: {os.path.getsize(save_path) / (1024**2):.2f} MB")
    for name, model_path in model_paths.items():
        print(f"Model ({name}): {os.path.basename(model_path)}")
        print(f"  Size: {os.path.getsize(model_path) / (1024**2):.2f} MB")
    print(f"Best model: {MODEL_LABELS.get(best_model, best_model)}")
    print("=" * 80)


def load_model_artifact(artifact_path: str) -> Dict[str, Any]:
    """
    Load saved model artifact and re-attach the CatBoost model.

    Args:
        artifact_path: Path to saved artifact

    Returns:
        Dictionary with all artifact components; artifact['models'] holds all three models
    """
    artifact = joblib.load(artifact_path)
    artifact_dir = os.path.dirname(os.path.abspath(artifact_path))

    print(f"Model artifact loaded from: {artifact_path}")
    print(f"Model version: {artifact.get('model_version', 'unknown')}")

    for name, model_path in artifact.get('model_paths', {}).items():
        # The artifact may have been moved together with its .cbm file
        if not os.path.exists(model_path):
            model_path = os.path.join(artifact_dir, os.path.basename(model_path))

        model = CatBoostRegressor()
        model.load_model(model_path)
        artifact['models'][name] = model
        print(f"  - Loaded {name} model from: {os.path.basename(model_path)}")

    print(f"Trained at: {artifact.get('trained_at', 'unknown')}")
    return artifact


def predict_with_model(
    artifact: Dict[str, Any],
    X: pd.DataFrame,
    X_encoded: pd.DataFrame,
    model_name: Optional[str] = None
) -> np.ndarray:
    """
    Predict Zestimates in dollars with one of the stored models.

    Args:
        artifact: Output of load_model_artifact
        X: Features with native categoricals (preprocess_for_inference)
        X_encoded: One-hot encoded features (preprocess_for_inference)
        model_name: Model to use (default: the artifact's best model)

    Returns:
        Predicted Zestimates (dollars)
    """
    model_name = model_name or artifact['best_model']
    if model_name not in artifact['models']:
        raise KeyError(f"Unknown model '{model_name}'. Available: {sorted(artifact['models'])}")

    y_pred = predict_log(model_name, artifact['models'][model_name], X, X_encoded)
    if artifact['preprocessing_metadata'].get('log_transform_target', True):
        y_pred = np.expm1(y_pred)

    return np.maximum(0, y_pred)


# ==================== SEGMENTED EVALUATION UTILITIES ====================

def evaluate_by_value_buckets(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    n_buckets: int = 5
) -> pd.DataFrame:
    """
    Evaluate model performance by Zestimate quantile buckets.

    This shows if a model performs differently on low vs high-value homes.

    Args:
        y_true: True Zestimates (dollars)
        y_pred: Predicted Zestimates (dollars)
        n_buckets: Number of quantile buckets

    Returns:
        DataFrame with metrics by bucket
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    buckets = pd.qcut(y_true, q=n_buckets, labels=False, duplicates='drop')

    results = []
    for bucket in sorted(np.unique(buckets)):
        mask = (buckets == bucket)
        bucket_y_true = y_true[mask]
        bucket_y_pred = y_pred[mask]

        results.append({
            'bucket': f"Q{int(bucket) + 1}",
            'n_samples': int(mask.sum()),
            'value_min': bucket_y_true.min(),
            'value_max': bucket_y_true.max(),
            'value_median': np.median(bucket_y_true),
            'rmse': float(np.sqrt(mean_squared_error(bucket_y_true, bucket_y_pred))),
            'mae': mean_absolute_error(bucket_y_true, bucket_y_pred),
            'mape': mean_absolute_percentage_error(bucket_y_true, bucket_y_pred) * 100
        })

    return pd.DataFrame(results)
