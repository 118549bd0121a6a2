import numpy as np
import pandas as pd
import pytest

from conftest import make_valuations
from zestimate_model.preprocessing import (
    CATEGORICAL_PREDICTORS,
    LEAKAGE_COLUMNS,
    NUMERIC_PREDICTORS,
    UNKNOWN,
    add_derived_columns,
    categorical_columns,
    clean_valuation_table,
    create_home_features,
    encode_categoricals,
    get_categorical_feature_indices,
    handle_missing_values,
    prepare_features_and_target,
    preprocess_for_inference,
    random_split,
    remove_data_errors,
    run_full_preprocessing_pipeline,
)


def test_clean_keeps_latest_query_per_home():
    raw = pd.DataFrame({
        "street": ["1 A St", "1 A Street", "2 B St", "3 C St", "4 D St"],
        "citystatezip": "Boston, MA 02134",
        "queried_on": ["2026-10-01", "2026-10-03", "2026-10-01", "2026-10-02", "2026-10-02"],
        "status_code": [0, 0, 508, 0, 0],
        "zpid": ["1", "1", None, "2", "3"],
        "zestimate": [100000, 110000, None, None, 200000],
    })

    cleaned = clean_valuation_table(raw, verbose=False)

    assert sorted(cleaned["zpid"]) == ["1", "3"]
    assert cleaned.loc[cleaned["zpid"] == "1", "zestimate"].item() == 110000


def test_zipcode_and_sale_year_are_derived():
    raw = pd.DataFrame({
        "citystatezip": ["Boston, MA 02134", "Cambridge, MA 02139", "Boston, MA"],
        "result_zipcode": [None, "2139", 2135.0],
        "last_sold_date": ["2010-01-01", None, "2000-07-02"],
    })

    out = add_derived_columns(raw)

    assert out["zipcode"].tolist() == ["02134", "02139", "02135"]
    assert out["last_sold_year"].iloc[0] == pytest.approx(2010.0)
    assert np.isnan(out["last_sold_year"].iloc[1])
    assert set(NUMERIC_PREDICTORS) <= set(out.columns)


def _error_frame():
    rng = np.random.default_rng(3)
    n = 30
    df = pd.DataFrame({
        "zestimate": rng.uniform(400000, 600000, size=n),
        "finished_sqft": rng.uniform(1500, 2000, size=n),
        "lot_size_sqft": rng.uniform(3000, 6000, size=n),
        "year_built": rng.integers(1920, 2000, size=n).astype(float),
        "bedrooms": rng.integers(2, 5, size=n).astype(float),
        "bathrooms": rng.integers(1, 3, size=n).astype(float),
    })
    bad = pd.DataFrame({
        "zestimate": [0.0, 500000, 500000, 500000, 500000],
        "finished_sqft": [1800, 0.0, 1800, 1800, np.nan],
        "lot_size_sqft": [4000, 4000, 4000, 4000, np.nan],
        "year_built": [1950, 1950, 1600, 1950, np.nan],
        "bedrooms": [3, 3, 3, 25, np.nan],
        "bathrooms": [2, 2, 2, 2, np.nan],
    })
    return pd.concat([df, bad], ignore_index=True)


def test_remove_data_errors_drops_impossible_rows_and_keeps_gaps():
    cleaned = remove_data_errors(_error_frame(), reference_year=2026, verbose=False)

    assert (cleaned["zestimate"] > 0).all()
    assert not (cleaned["finished_sqft"] == 0).any()
    assert not (cleaned["year_built"] < 1700).any()
    assert not (cleaned["bedrooms"] > 20).any()
    # A home with no living area on record cannot be judged and stays
    assert cleaned["finished_sqft"].isna().sum() == 1
    assert len(cleaned) >= 28


def _split_valuations():
    df = clean_valuation_table(make_valuations(), verbose=False)
    return random_split(df, test_size=0.2, random_seed=1)


def test_imputation_fills_numeric_and_categorical_gaps():
    train, test = _split_valuations()
    test.loc[0, "use_code"] = None

    train_imp, test_imp, imputation_values = handle_missing_values(train, test, random_seed=1)

    numeric = imputation_values["numeric_columns"]
    assert not train_imp[numeric].isna().any().any()
    assert not test_imp[numeric].isna().any().any()
    assert test_imp.loc[0, "use_code"] == UNKNOWN

    for col in numeric:
        assert train_imp[col].min() >= train[col].min() - 1e-9
        assert train_imp[col].max() <= train[col].max() + 1e-9


def test_imputation_with_a_constant_column_in_train():
    train, test = _split_valuations()
    train["bedrooms"] = 3.0
    train.loc[train.index[:4], "bedrooms"] = np.nan

    train_imp, test_imp, _ = handle_missing_values(train, test, random_seed=1)

    assert train_imp["bedrooms"].notna().all()
    assert not test_imp["finished_sqft"].isna().any()


def test_imputer_ignores_the_test_set():
    train, test = _split_valuations()
    _, _, reference = handle_missing_values(train, test, random_seed=1)

    shifted = test.copy()
    shifted["finished_sqft"] = shifted["finished_sqft"] * 100
    _, _, refit = handle_missing_values(train, shifted, random_seed=1)

    probe = train.head(5).copy()
    probe["year_built"] = np.nan
    first = reference["imputer"].transform(np.array(probe[reference["numeric_columns"]], dtype=float))
    second = refit["imputer"].transform(np.array(probe[refit["numeric_columns"]], dtype=float))
    np.testing.assert_allclose(first, second)


def test_home_features():
    df = pd.DataFrame({
        "year_built": [1926.0, 2030.0],
        "last_sold_year": [2016.0, np.nan],
        "finished_sqft": [2000.0, 0.0],
        "lot_size_sqft": [5000.0, 5000.0],
        "bedrooms": [0.0, 4.0],
        "bathrooms": [1.5, 2.0],
        "total_rooms": [8.0, 7.0],
        "tax_assessment": [400000.0, 300000.0],
    })

    out = create_home_features(df, pd.Timestamp("2026-01-01"))

    assert out.loc[0, "home_age"] == pytest.approx(100.0)
    assert out.loc[1, "home_age"] == 0.0
    assert out.loc[0, "years_since_sold"] == pytest.approx(10.0)
    assert out.loc[0, "bath_bed_ratio"] == 1.5
    assert out.loc[1, "bath_bed_ratio"] == 0.5
    assert out.loc[0, "rooms_per_1000_sqft"] == pytest.approx(4.0)
    assert out.loc[0, "tax_assessment_per_sqft"] == pytest.approx(200.0)
    assert out.loc[1, "rooms_per_1000_sqft"] == 0.0
    assert out.loc[0, "log_finished_sqft"] == pytest.approx(np.log1p(2000.0))


def test_features_never_include_zestimate_derived_columns():
    df = make_valuations()
    df = add_derived_columns(df)

    X, y = prepare_features_and_target(df)

    assert not set(LEAKAGE_COLUMNS) & set(X.columns)
    assert not {"zestimate", "zpid", "street", "queried_on", "status_code"} & set(X.columns)
    np.testing.assert_allclose(y.dropna(), np.log1p(df["zestimate"].dropna()))


def test_string_columns_count_as_categorical():
    X = pd.DataFrame({
        "finished_sqft": [1200.0, 1500.0],
        "zipcode": pd.Series(["02134", "02139"], dtype="string"),
        "use_code": pd.Categorical(["SingleFamily", "Condominium"]),
        "region_name": ["Allston", "Cambridgeport"],
    })

    assert categorical_columns(X) == ["zipcode", "use_code", "region_name"]
    assert get_categorical_feature_indices(X) == [1, 2, 3]


def test_encoding_collapses_rare_levels_and_handles_unseen():
    X_train = pd.DataFrame({
        "finished_sqft": np.arange(14, dtype=float),
        "flat": 1.0,
        "zipcode": ["A"] * 6 + ["B"] * 6 + ["C"] * 2,
        "use_code": ["SingleFamily"] * 7 + ["Condominium"] * 7,
    })
    X_test = pd.DataFrame({
        "finished_sqft": [3.0, 4.0],
        "flat": [1.0, 1.0],
        "zipcode": ["D", "B"],
        "use_code": ["Townhouse", "SingleFamily"],
    })

    train_encoded, test_encoded, encoding = encode_categoricals(X_train, X_test, min_level_count=5)

    assert encoding["levels"]["zipcode"] == ["A", "B", "Other"]
    assert encoding["levels"]["use_code"] == ["Condominium", "SingleFamily"]
    assert list(train_encoded.columns) == ["finished_sqft", "zipcode_B", "zipcode_Other", "use_code_SingleFamily"]
    assert list(test_encoded.columns) == list(train_encoded.columns)
    assert train_encoded["zipcode_Other"].sum() == 2

    # Unseen ZIP falls into "Other"; unseen use code has no column of its own
    assert test_encoded.loc[0, "zipcode_Other"] == 1.0
    assert test_encoded.loc[0, "use_code_SingleFamily"] == 0.0
    assert test_encoded.loc[1, "zipcode_B"] == 1.0


def test_full_pipeline_shapes_and_metadata():
    data = run_full_preprocessing_pipeline(make_valuations(), random_seed=3)

    X_train, X_test = data["X_train"], data["X_test"]
    metadata = data["preprocessing_metadata"]

    assert list(X_train.columns) == metadata["feature_order"]
    assert list(X_test.columns) == metadata["feature_order"]
    assert list(data["X_test_encoded"].columns) == metadata["encoded_feature_order"]
    assert len(X_train) == len(data["y_train"])
    assert not X_train.isna().any().any()
    assert not data["X_test_encoded"].isna().any().any()

    # 8 misses and 5 vacant parcels never reach the models
    assert len(X_train) + len(X_test) <= 195
    assert "VacantResidentialLand" not in set(X_train["use_code"]) | set(X_test["use_code"])

    categorical = [X_train.columns[i] for i in data["categorical_indices"]]
    assert sorted(categorical) == sorted(CATEGORICAL_PREDICTORS)
    assert data["y_train"].max() < 20
    assert metadata["reference_date"] == pd.Timestamp(data["train_df"]["queried_on"].max()).normalize()


def test_all_use_codes_are_kept_when_no_filter_is_given():
    data = run_full_preprocessing_pipeline(make_valuations(), keep_use_codes=None)

    seen = set(data["X_train"]["use_code"]) | set(data["X_test"]["use_code"])
    assert "VacantResidentialLand" in seen


def test_inference_matches_training_columns():
    data = run_full_preprocessing_pipeline(make_valuations())
    metadata = data["preprocessing_metadata"]

    X, X_encoded = preprocess_for_inference(
        {"finished_sqft": 1850, "bedrooms": 3, "bathrooms": 2.5, "zipcode": "02134",
         "use_code": "SingleFamily", "last_sold_date": "2012-06-15", "last_sold_price": 545000},
        metadata
    )

    assert X.shape == (1, len(metadata["feature_order"]))
    assert list(X_encoded.columns) == metadata["encoded_feature_order"]
    assert not X.isna().any().any()
    assert X.loc[0, "zipcode"] == "02134"


def test_too_few_homes_raises():
    with pytest.raises(ValueError):
        run_full_preprocessing_pipeline(make_valuations(n=8, n_missed=2))
