"""
Data Preprocessing Module for the Zestimate study

This module contains all data transformation logic used in both:
1. Model training (zestimate_model.report.run_analysis)
2. Production inference (zestimate_model.api)

CRITICAL: All transformations must be deterministic and use only training set statistics
to prevent data leakage.

Architecture decisions:
- Shuffled train/test split (80/20) with a fixed seed; the sample has no time order
- Chained-equations imputation (IterativeImputer) fitted on train only
- Zestimate-derived columns (valuation range, value change, percentile) never reach the models
- Conservative error removal (domain-driven), missing values are imputed, not dropped
"""

import re
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer
from sklearn.model_selection import train_test_split


TARGET_COL = 'zestimate'

NUMERIC_PREDICTORS = [
    'latitude', 'longitude', 'tax_assessment', 'year_built', 'lot_size_sqft',
    'finished_sqft', 'bathrooms', 'bedrooms', 'total_rooms', 'last_sold_price',
    'last_sold_year', 'zindex_value',
]

CATEGORICAL_PREDICTORS = ['use_code', 'zipcode']

ENGINEERED_FEATURES = [
    'home_age', 'years_since_sold', 'log_finished_sqft', 'log_lot_size_sqft',
    'bath_bed_ratio', 'rooms_per_1000_sqft', 'tax_assessment_per_sqft',
]

# Imputer inputs only; home_age and years_since_sold carry them into the models
RAW_YEAR_COLUMNS = ['year_built', 'last_sold_year']

# Computed by the service from the Zestimate itself
LEAKAGE_COLUMNS = [
    'zestimate_low', 'zestimate_high', 'value_change_30d', 'percentile', 'zestimate_last_updated',
]

DEFAULT_RESIDENTIAL_USE_CODES = [
    'SingleFamily', 'Condominium', 'Townhouse', 'Cooperative', 'Duplex', 'Triplex',
    'Quadruplex', 'MultiFamily2To4', 'MultiFamily5Plus', 'Mobile', 'Miscellaneous',
]

UNKNOWN = 'Unknown'
OTHER = 'Other'


def _decimal_year(dates: pd.Series) -> pd.Series:
    return dates.dt.year + (dates.dt.dayofyear - 1) / 365.25


def _normalize_zip(value) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    match = re.search(r'\b(\d{5})\b', str(value))
    if match:
        return match.group(1)
    digits = str(value).split('.')[0]
    return digits.zfill(5) if digits.isdigit() and len(digits) <= 5 else None


def _ensure_columns(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    for col in columns:
        if col not in df.columns:
            df[col] = np.nan
    return df


def add_derived_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add the columns every later step expects.

    - zipcode: from the service's result ZIP, else parsed from citystatezip
    - last_sold_year: decimal year of last_sold_date (imputable, unlike a date)

    Args:
        df: Raw checkpoint rows or inference records

    Returns:
        DataFrame with zipcode, last_sold_year and every numeric predictor present
    """
    df = df.copy()

    zip_source = None
    for col in ['zipcode', 'result_zipcode', 'citystatezip']:
        if col in df.columns:
            candidate = df[col].map(_normalize_zip)
            zip_source = candidate if zip_source is None else zip_source.fillna(candidate)
    df['zipcode'] = zip_source if zip_source is not None else None

    if 'last_sold_date' in df.columns:
        sold = pd.to_datetime(df['last_sold_date'], errors='coerce')
        derived = _decimal_year(sold)
        df['last_sold_year'] = derived if 'last_sold_year' not in df.columns else df['last_sold_year'].fillna(derived)

    df = _ensure_columns(df, NUMERIC_PREDICTORS)
    for col in NUMERIC_PREDICTORS:
        df[col] = pd.to_numeric(df[col], errors='coerce')

    if 'use_code' not in df.columns:
        df['use_code'] = None

    return df


def clean_valuation_table(df: pd.DataFrame, verbose: bool = True) -> pd.DataFrame:
    """
    Turn the raw collection checkpoint into one row per home with a Zestimate.

    Steps:
    1. Keep successful calls only (status_code == 0)
    2. Coerce numeric columns, parse dates, derive zipcode and last_sold_year
    3. Drop repeated homes (same zpid reached from two address spellings), keeping the latest query
    4. Drop rows without a Zestimate (nothing to learn from)

    Args:
        df: Checkpoint frame from zestimate_model.collection
        verbose: Print removal statistics

    Returns:
        Cleaned DataFrame
    """
    df = df.copy()
    original_count = len(df)

    if 'status_code' in df.columns:
        df = df[pd.to_numeric(df['status_code'], errors='coerce') == 0]

    df = add_derived_columns(df)

    for col in [TARGET_COL] + [c for c in LEAKAGE_COLUMNS if c != 'zestimate_last_updated']:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors='coerce')
    if TARGET_COL not in df.columns:
        df[TARGET_COL] = np.nan

    if 'queried_on' in df.columns:
        df['queried_on'] = pd.to_datetime(df['queried_on'], errors='coerce')
        df = df.sort_values('queried_on', kind='stable')

    if 'zpid' in df.columns:
        repeated = df['zpid'].notna() & df.duplicated(subset='zpid', keep='last')
        df = df[~repeated]

    df = df[df[TARGET_COL].notna()].reset_index(drop=True)

    if verbose:
        removed = original_count - len(df)
        print(f"Cleaned valuation table: kept {len(df):,} / {original_count:,} rows ({removed:,} misses, repeats or missing Zestimates)")

    return df


def filter_by_use_code(df: pd.DataFrame, keep_use_codes: List[str] = None) -> pd.DataFrame:
    """
    Filter homes by the service's property use code.

    Commercial and vacant-land parcels are valued on a different basis, so the
    study keeps residential use codes only. Homes with no use code are kept and
    get the "Unknown" level later.

    Args:
        df: Input DataFrame
        keep_use_codes: Use codes to keep. If None, keep all.

    Returns:
        Filtered DataFrame with row count logged
    """
    df = df.copy()
    original_count = len(df)

    if keep_use_codes is not None:
        df = df[df['use_code'].isin(keep_use_codes) | df['use_code'].isna()]
        filtered_count = len(df)
        removed_pct = (1 - filtered_count / original_count) * 100 if original_count else 0.0
        print(f"Filtered use_code: kept {filtered_count:,} / {original_count:,} rows ({removed_pct:.1f}% removed)")

    return df


def remove_data_errors(
    df: pd.DataFrame,
    reference_year: int = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Remove obvious data errors based on domain knowledge.

    Rules (conservative, only remove clear errors; missing values pass through):
    1. zestimate <= 0 (impossible)
    2. finished_sqft or lot_size_sqft <= 0 (impossible)
    3. year_built before 1700 or after the reference year
    4. more than 20 bedrooms or bathrooms (data entry errors)
    5. Extreme value-per-sqft outliers (0.5th and 99.5th percentiles)

    Args:
        df: Input DataFrame
        reference_year: Latest plausible build year (defaults to the current year)
        verbose: Print removal statistics

    Returns:
        Cleaned DataFrame
    """
    df = df.copy()
    original_count = len(df)
    reference_year = reference_year or pd.Timestamp.today().year

    # Rule 1
    df = df[df[TARGET_COL] > 0]

    # Rule 2
    for col in ['finished_sqft', 'lot_size_sqft']:
        df = df[df[col].isna() | (df[col] > 0)]

    # Rule 3
    df = df[df['year_built'].isna() | df['year_built'].between(1700, reference_year)]

    # Rule 4
    for col in ['bedrooms', 'bathrooms']:
        df = df[df[col].isna() | df[col].between(0, 20)]

    # Rule 5: only rows with a living area can be judged
    value_per_sqft = df[TARGET_COL] / df['finished_sqft']
    if value_per_sqft.notna().sum() > 0:
        p005 = value_per_sqft.quantile(0.005)
        p995 = value_per_sqft.quantile(0.995)
        df = df[value_per_sqft.isna() | value_per_sqft.between(p005, p995)]

    final_count = len(df)
    removed = original_count - final_count
    removed_pct = (removed / original_count) * 100 if original_count else 0.0

    if verbose:
        print(f"Removed {removed:,} obvious data errors ({removed_pct:.2f}%)")
        print(f"Remaining: {final_count:,} rows")

    return df.reset_index(drop=True)


def random_split(
    df: pd.DataFrame,
    test_size: float = 0.20,
    random_seed: int = 42
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Standard shuffled train/test split.

    Args:
        df: Input DataFrame
        test_size: Fraction held out for testing (default 0.20)
        random_seed: Seed for reproducibility

    Returns:
        train_df, test_df
    """
    train_df, test_df = train_test_split(df, test_size=test_size, random_state=random_seed)
    train_df = train_df.reset_index(drop=True)
    test_df = test_df.reset_index(drop=True)

    n = len(df)
    print(f"\nRandom Split (seed={random_seed}):")
    print(f"  Train: {len(train_df):,} rows ({len(train_df)/n*100:.1f}%)")
    print(f"  Test:  {len(test_df):,} rows ({len(test_df)/n*100:.1f}%)")

    return train_df, test_df


def handle_missing_values(
    train_df: pd.DataFrame,
    test_df: pd.DataFrame = None,
    random_seed: int = 42,
    max_iter: int = 10
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
    """
    Handle missing values using training set statistics only.

    Categorical: Fill with "Unknown"
    Numeric: Chained-equations imputation (each predictor regressed on the others,
             iterated until stable), fitted on train only. Imputed values are
             clipped to the range observed in train.
    Target: never used by the imputer.

    Args:
        train_df: Training DataFrame
        test_df: Test DataFrame (optional)
        random_seed: Seed for the imputer
        max_iter: Imputation rounds

    Returns:
        train_df, test_df, imputation_values (dict to store in artifact)
    """
    numeric_cols = [c for c in NUMERIC_PREDICTORS if c in train_df.columns]
    categorical_cols = [c for c in CATEGORICAL_PREDICTORS if c in train_df.columns]

    missing = train_df[numeric_cols].isna().sum()
    missing = missing[missing > 0]
    if len(missing) > 0:
        print("Missing numeric values in train:")
        for col, count in missing.items():
            print(f"  {col}: {count:,} ({count/len(train_df)*100:.1f}%)")

    observed_min = np.array(train_df[numeric_cols].min().fillna(-np.inf), dtype=float)
    observed_max = np.array(train_df[numeric_cols].max().fillna(np.inf), dtype=float)
    # The imputer rejects min >= max; constant columns are left unbounded
    constant = observed_min >= observed_max
    observed_min[constant] = -np.inf
    observed_max[constant] = np.inf

    imputer = IterativeImputer(
        max_iter=max_iter,
        random_state=random_seed,
        min_value=observed_min,
        max_value=observed_max,
        keep_empty_features=True
    )
    imputer.fit(np.array(train_df[numeric_cols], dtype=float))

    imputation_values = {
        'imputer': imputer,
        'numeric_columns': numeric_cols,
        'categorical_fill': {col: UNKNOWN for col in categorical_cols},
    }

    train_df = apply_imputation(train_df, imputation_values)
    test_df = apply_imputation(test_df, imputation_values) if test_df is not None else None

    return train_df, test_df, imputation_values


def apply_imputation(df: pd.DataFrame, imputation_values: Dict[str, Any]) -> pd.DataFrame:
    """Apply a fitted imputation (see handle_missing_values) to any frame."""
    df = df.copy()

    for col, fill_value in imputation_values['categorical_fill'].items():
        if col not in df.columns:
            df[col] = fill_value
        df[col] = df[col].fillna(fill_value).replace('', fill_value).astype(str).astype(object)

    numeric_cols = imputation_values['numeric_columns']
    df = _ensure_columns(df, numeric_cols)
    imputed = imputation_values['imputer'].transform(np.array(df[numeric_cols], dtype=float))
    df[numeric_cols] = pd.DataFrame(imputed, columns=numeric_cols, index=df.index)

    return df


def create_home_features(df: pd.DataFrame, reference_date: pd.Timestamp) -> pd.DataFrame:
    """
    Create home-level features with safe division.

    Features:
    - home_age: years between year_built and the reference date
    - years_since_sold: years since the last recorded sale
    - log_finished_sqft, log_lot_size_sqft: sizes are right-skewed
    - bath_bed_ratio = bathrooms / bedrooms (bathrooms when there are no bedrooms)
    - rooms_per_1000_sqft = total_rooms / finished_sqft * 1000
    - tax_assessment_per_sqft = tax_assessment / finished_sqft

    CRITICAL: reference_date MUST be computed once on training and reused for
    test and API to prevent leakage.

    Args:
        df: Imputed DataFrame
        reference_date: Latest query date in the training set

    Returns:
        DataFrame with home features
    """
    df = df.copy()
    reference_date = pd.Timestamp(reference_date)
    reference_year = reference_date.year + (reference_date.dayofyear - 1) / 365.25

    df['home_age'] = (reference_year - df['year_built']).clip(lower=0)
    df['years_since_sold'] = (reference_year - df['last_sold_year']).clip(lower=0)

    df['log_finished_sqft'] = np.log1p(df['finished_sqft'].clip(lower=0))
    df['log_lot_size_sqft'] = np.log1p(df['lot_size_sqft'].clip(lower=0))

    df['bath_bed_ratio'] = np.where(
        df['bedrooms'] > 0,
        df['bathrooms'] / df['bedrooms'].where(df['bedrooms'] > 0, 1),
        df['bathrooms']
    )

    has_area = df['finished_sqft'] > 0
    safe_area = df['finished_sqft'].where(has_area, 1)
    df['rooms_per_1000_sqft'] = np.where(has_area, df['total_rooms'] / safe_area * 1000, 0.0)
    df['tax_assessment_per_sqft'] = np.where(has_area, df['tax_assessment'] / safe_area, 0.0)

    return df


def prepare_features_and_target(
    df: pd.DataFrame,
    target_col: str = TARGET_COL,
    log_transform_target: bool = True
) -> Tuple[pd.DataFrame, Optional[pd.Series]]:
    """
    Prepare final feature matrix and target vector.

    Only the predictor columns are kept, so identifiers (zpid, address text),
    bookkeeping (queried_on, status_code) and the Zestimate-derived columns can
    never leak into a model. Build and sale years enter as ages.

    Args:
        df: Input DataFrame with all features
        target_col: Name of target column (default: 'zestimate')
        log_transform_target: Whether to apply log1p to target

    Returns:
        X (features with native categoricals), y (None when df has no target)
    """
    numeric_cols = [c for c in NUMERIC_PREDICTORS if c not in RAW_YEAR_COLUMNS]
    feature_cols = numeric_cols + ENGINEERED_FEATURES + CATEGORICAL_PREDICTORS
    X = df[[c for c in feature_cols if c in df.columns]].copy()

    y = None
    if target_col in df.columns:
        y = df[target_col].astype(float).copy()
        if log_transform_target:
            y = np.log1p(y)

    return X, y


def categorical_columns(X: pd.DataFrame) -> List[str]:
    """Non-numeric columns, whether pandas stores them as object, str or category."""
    return [col for col in X.columns if not pd.api.types.is_numeric_dtype(X[col])]


def get_categorical_feature_indices(X: pd.DataFrame) -> List[int]:
    """
    Get indices of categorical features for CatBoost.

    CatBoost needs to know which features are categorical so it can
    use its native categorical handling (no need for one-hot encoding).

    Args:
        X: Feature DataFrame

    Returns:
        List of column indices that are categorical
    """
    categorical_cols = categorical_columns(X)
    categorical_indices = [X.columns.get_loc(col) for col in categorical_cols]
    return categorical_indices


def encode_categoricals(
    X_train: pd.DataFrame,
    X_test: pd.DataFrame = None,
    min_level_count: int = 5
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
    """
    One-hot encode categoricals for the linear models, using train levels only.

    - Levels seen fewer than min_level_count times in train collapse into "Other"
    - The first level of each categorical is the reference (dropped) level
    - Columns that are constant in train are dropped (OLS cannot estimate them)

    Args:
        X_train: Training features with native categoricals
        X_test: Test features (optional)
        min_level_count: Minimum train count for a level to get its own column

    Returns:
        X_train_encoded, X_test_encoded, encoding (dict to store in artifact)
    """
    categorical_cols = categorical_columns(X_train)

    levels = {}
    for col in categorical_cols:
        counts = X_train[col].astype(str).value_counts()
        kept = sorted(counts[counts >= min_level_count].index.tolist())
        levels[col] = kept + ([OTHER] if len(kept) < len(counts) else [])

    encoding = {'levels': levels, 'columns': None}
    train_encoded = _dummy_encode(X_train, levels)

    varying = train_encoded.columns[train_encoded.nunique(dropna=False) > 1].tolist()
    encoding['columns'] = varying

    train_encoded = train_encoded[varying]
    test_encoded = apply_encoding(X_test, encoding) if X_test is not None else None

    return train_encoded, test_encoded, encoding


def _dummy_encode(X: pd.DataFrame, levels: Dict[str, List[str]]) -> pd.DataFrame:
    X = X.copy()
    for col, col_levels in levels.items():
        values = X[col].astype(str)
        if OTHER in col_levels:
            values = values.where(values.isin(col_levels), OTHER)
        X[col] = pd.Categorical(values, categories=col_levels)
    encoded = pd.get_dummies(X, columns=list(levels.keys()), drop_first=True, dtype=float)
    return encoded.astype(float)


def apply_encoding(X: pd.DataFrame, encoding: Dict[str, Any]) -> pd.DataFrame:
    """Encode new rows exactly like the training rows (unseen levels -> all-zero dummies)."""
    encoded = _dummy_encode(X, encoding['levels'])
    return encoded.reindex(columns=encoding['columns'], fill_value=0.0)


# ==================== INFERENCE-TIME PREPROCESSING ====================

def preprocess_for_inference(
    input_data: Union[Dict[str, Any], List[Dict[str, Any]], pd.DataFrame],
    preprocessing_metadata: Dict[str, Any]
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Preprocess new homes for prediction.

    This function applies the SAME transformations as training, using
    stored metadata from the artifact to ensure consistency.

    Args:
        input_data: One record, a list of records, or a DataFrame
        preprocessing_metadata: Stored metadata from training

    Returns:
        X (native categoricals, for CatBoost), X_encoded (for the linear models)
    """
    if isinstance(input_data, pd.DataFrame):
        df = input_data.copy()
    elif isinstance(input_data, dict):
        df = pd.DataFrame([input_data])
    else:
        df = pd.DataFrame(list(input_data))

    df = add_derived_columns(df)
    df = apply_imputation(df, preprocessing_metadata['imputation_values'])
    df = create_home_features(df, preprocessing_metadata['reference_date'])

    X, _ = prepare_features_and_target(df, log_transform_target=False)
    X = X[preprocessing_metadata['feature_order']]
    X_encoded = apply_encoding(X, preprocessing_metadata['encoding'])

    return X, X_encoded


# ==================== COMPLETE PREPROCESSING PIPELINE ====================

def run_full_preprocessing_pipeline(
    df: pd.DataFrame,
    keep_use_codes: Optional[List[str]] = DEFAULT_RESIDENTIAL_USE_CODES,
    test_size: float = 0.20,
    random_seed: int = 42,
    min_level_count: int = 5
) -> Dict[str, Any]:
    """
    Run the complete preprocessing pipeline for training.

    Steps:
    1. Clean the collected table
    2. Filter by use code
    3. Remove data errors
    4. Random train/test split
    5. Handle missing values (imputer fitted on train)
    6. Create home features
    7. Prepare final X, y matrices
    8. Encode categoricals for the linear models

    Args:
        df: Raw checkpoint frame
        keep_use_codes: Use codes to keep (default: residential, None keeps all)
        test_size: Test set fraction
        random_seed: Seed for split and imputer
        min_level_count: Rare-level threshold for one-hot encoding

    Returns:
        Dictionary containing:
        - X_train, X_test (native categoricals), X_train_encoded, X_test_encoded
        - y_train, y_test (log1p Zestimate)
        - train_df, test_df (cleaned, imputed frames for baselines and reporting)
        - preprocessing_metadata (to store in artifact)
        - categorical_indices (for CatBoost)
    """
    print("=" * 80)
    print("RUNNING FULL PREPROCESSING PIPELINE")
    print("=" * 80)

    print("\n[1/8] Cleaning collected valuations...")
    df = clean_valuation_table(df)

    print("\n[2/8] Filtering by use code...")
    df = filter_by_use_code(df, keep_use_codes)

    print("\n[3/8] Removing data errors...")
    df = remove_data_errors(df, verbose=True)

    if len(df) < 10:
        raise ValueError(f"Only {len(df)} usable homes after cleaning; collect more valuations first")

    print("\n[4/8] Splitting data...")
    train_df, test_df = random_split(df, test_size=test_size, random_seed=random_seed)

    print("\n[5/8] Handling missing values...")
    train_df, test_df, imputation_values = handle_missing_values(train_df, test_df, random_seed=random_seed)

    print("\n[6/8] Creating home features...")
    if 'queried_on' in train_df.columns and train_df['queried_on'].notna().any():
        reference_date = pd.Timestamp(train_df['queried_on'].max()).normalize()
    else:
        reference_date = pd.Timestamp.today().normalize()
    train_df = create_home_features(train_df, reference_date)
    test_df = create_home_features(test_df, reference_date)

    print("\n[7/8] Preparing final feature matrices...")
    X_train, y_train = prepare_features_and_target(train_df)
    X_test, y_test = prepare_features_and_target(test_df)
    categorical_indices = get_categorical_feature_indices(X_train)

    print("\n[8/8] Encoding categoricals for the linear models...")
    X_train_encoded, X_test_encoded, encoding = encode_categoricals(
        X_train, X_test, min_level_count=min_level_count
    )

    preprocessing_metadata = {
        'reference_date': reference_date,
        'imputation_values': imputation_values,
        'feature_order': X_train.columns.tolist(),
        'encoded_feature_order': X_train_encoded.columns.tolist(),
        'encoding': encoding,
        'categorical_indices': categorical_indices,
        'keep_use_codes': keep_use_codes,
        'test_size': test_size,
        'random_seed': random_seed,
        'log_transform_target': True,
        'global_median_zestimate': float(np.expm1(y_train).median()),
    }

    print("\n" + "=" * 80)
    print("PREPROCESSING COMPLETE")
    print("=" * 80)
    print(f"Train: {X_train.shape[0]:,} rows × {X_train.shape[1]} features ({X_train_encoded.shape[1]} encoded)")
    print(f"Test:  {X_test.shape[0]:,} rows × {X_test.shape[1]} features")
    print(f"Categorical features: {len(categorical_indices)}")

    return {
        'X_train': X_train,
        'y_train': y_train,
        'X_test': X_test,
        'y_test': y_test,
        'X_train_encoded': X_train_encoded,
        'X_test_encoded': X_test_encoded,
        'train_df': train_df,
        'test_df': test_df,
        'preprocessing_metadata': preprocessing_metadata,
        'categorical_indices': categorical_indices
    }
