"""
FastAPI Service for the Zestimate study

REST API with:
- POST /api/v1/estimate: Estimate a home's Zestimate with any of the three models
- GET /api/v1/models: Model comparison from training
- GET /health: Service health check
- Input validation with Pydantic
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .model import MODEL_LABELS, load_model_artifact, predict_with_model
from .preprocessing import preprocess_for_inference
from .settings import settings


# ==================== API MODELS (Request/Response Schemas) ====================

class EstimateRequest(BaseModel):
    """
    Request schema for a Zestimate estimate.

    Only living area, bedrooms, bathrooms and ZIP code are required; anything
    else missing is imputed exactly like missing values in the training data.
    """
    finished_sqft: float = Field(..., gt=0, description="Finished living area in square feet")
    bedrooms: int = Field(..., ge=0, le=20, description="Number of bedrooms")
    bathrooms: float = Field(..., ge=0, le=20, description="Number of bathrooms (halves allowed)")
    zipcode: str = Field(..., description="5-digit ZIP code")

    use_code: Optional[str] = Field("SingleFamily", description="Property use code (e.g. 'SingleFamily', 'Condominium')")
    year_built: Optional[int] = Field(None, ge=1700, description="Year the home was built")
    lot_size_sqft: Optional[float] = Field(None, gt=0, description="Lot size in square feet")
    total_rooms: Optional[int] = Field(None, ge=0, description="Total number of rooms")
    tax_assessment: Optional[float] = Field(None, ge=0, description="Latest tax assessment in dollars")
    last_sold_price: Optional[float] = Field(None, ge=0, description="Last recorded sale price in dollars")
    last_sold_date: Optional[date] = Field(None, description="Date of the last recorded sale")
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    zindex_value: Optional[float] = Field(None, ge=0, description="Neighborhood home value index")

    @field_validator('zipcode')
    @classmethod
    def validate_zipcode(cls, v):
        v = v.strip()
        if len(v) != 5 or not v.isdigit():
            raise ValueError('zipcode must be a 5-digit ZIP code')
        return v

    @field_validator('year_built')
    @classmethod
    def validate_year_built(cls, v):
        if v is not None and v > datetime.now().year:
            raise ValueError('year_built cannot be in the future')
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "finished_sqft": 1850,
                "bedrooms": 3,
                "bathrooms": 2.5,
                "zipcode": "02134",
                "use_code": "SingleFamily",
                "year_built": 1925,
                "lot_size_sqft": 4200,
                "last_sold_date": "2012-06-15",
                "last_sold_price": 545000
            }
        }
    )


class EstimateResponse(BaseModel):
    """Response schema for a Zestimate estimate."""
    estimated_value: float = Field(..., description="Estimated Zestimate in dollars")
    model: str = Field(..., description="Model used")
    model_label: str = Field(..., description="Human-readable model name")
    value_per_sqft: float = Field(..., description="Estimated value per square foot")
    test_rmse: Optional[float] = Field(None, description="The model's RMSE on held-out homes (dollars)")
    key_factors: List[str] = Field(..., description="Top 3 factors the model relies on")


class ModelSummary(BaseModel):
    model: str
    label: str
    test_r2: float
    test_rmse: float
    test_mae: float
    test_mape: float
    is_best: bool


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    model_loaded: bool
    best_model: Optional[str] = None
    model_version: Optional[str] = None
    trained_at: Optional[str] = None
    uptime_seconds: Optional[float] = None


# ==================== FASTAPI APPLICATION ====================

app = FastAPI(
    title="Zestimate Model API",
    description="Home valuation estimates from backward-selected OLS, elastic net and CatBoost",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Global state
artifact = None
start_time = None


@app.on_event("startup")
async def load_model():
    """
    Load model artifact at startup.

    This runs once when the service starts, loading the models into memory
    for fast inference.
    """
    global artifact, start_time

    start_time = datetime.now()
    artifact_path = settings.artifact_path

    if not artifact_path.exists():
        print(f"Model artifact not found at: {artifact_path}")
        print("   Run 'python -m zestimate_model train' first!")
        artifact = None
        return

    try:
        artifact = load_model_artifact(str(artifact_path))
    except (OSError, ValueError, KeyError) as e:
        print(f"Error loading model: {e}")
        artifact = None
        return

    best = artifact['best_model']
    print(f"Model loaded successfully!")
    print(f"  Best model: {MODEL_LABELS.get(best, best)}")
    print(f"  Test RMSE: {artifact['metrics'][best]['test']['rmse']:,.0f}")


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Service health check endpoint."""
    uptime = (datetime.now() - start_time).total_seconds() if start_time else 0

    return HealthResponse(
        status="healthy" if artifact is not None else "unhealthy",
        model_loaded=artifact is not None,
        best_model=artifact.get('best_model') if artifact else None,
        model_version=artifact.get('model_version') if artifact else None,
        trained_at=str(artifact.get('trained_at')) if artifact else None,
        uptime_seconds=uptime
    )


def _require_artifact() -> Dict[str, Any]:
    if artifact is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model not loaded. Please check server logs."
        )
    return artifact


@app.get("/api/v1/models", response_model=List[ModelSummary], tags=["Models"])
async def list_models():
    """The trained models ranked by test RMSE (baselines excluded)."""
    loaded = _require_artifact()
    comparison = loaded['comparison']
    comparison = comparison[comparison['model'].isin(list(loaded['models']))]

    return [
        ModelSummary(
            model=row['model'],
            label=row['label'],
            test_r2=row['test_r2'],
            test_rmse=row['test_rmse'],
            test_mae=row['test_mae'],
            test_mape=row['test_mape'],
            is_best=row['model'] == loaded['best_model']
        )
        for _, row in comparison.iterrows()
    ]


@app.post("/api/v1/estimate", response_model=EstimateResponse, tags=["Estimate"])
async def estimate(
    request: EstimateRequest,
    model: Optional[str] = Query(None, description="Model to use (default: best on test RMSE)")
):
    """
    Estimate a home's Zestimate.

    Process:
    1. Validate input
    2. Preprocess features (same imputation, features and encoding as training)
    3. Predict with the requested (or best) model
    4. Report the model's key factors

    Raises:
        503: Model not loaded
        404: Unknown model name
        422: Invalid input
        500: Prediction error
    """
    loaded = _require_artifact()
    model_name = model or loaded['best_model']
    if model_name not in loaded['models']:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown model '{model_name}'. Available: {sorted(loaded['models'])}"
        )

    try:
        input_data = convert_request_to_input(request)
        X, X_encoded = preprocess_for_inference(input_data, loaded['preprocessing_metadata'])
        estimated_value = float(predict_with_model(loaded, X, X_encoded, model_name=model_name)[0])
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid input: {str(e)}"
        )

    test_metrics = loaded.get('metrics', {}).get(model_name, {}).get('test', {})

    return EstimateResponse(
        estimated_value=estimated_value,
        model=model_name,
        model_label=MODEL_LABELS.get(model_name, model_name),
        value_per_sqft=estimated_value / request.finished_sqft,
        test_rmse=test_metrics.get('rmse'),
        key_factors=generate_key_factors(request, loaded.get('feature_importance'), model_name)
    )


# ==================== HELPER FUNCTIONS ====================

def convert_request_to_input(request: EstimateRequest) -> Dict[str, Any]:
    """Map the API schema onto the collected-valuation columns."""
    input_data = request.model_dump()
    if input_data['last_sold_date'] is not None:
        input_data['last_sold_date'] = input_data['last_sold_date'].isoformat()
    return input_data


def generate_key_factors(
    request: EstimateRequest,
    feature_importance: Optional[pd.DataFrame],
    model_name: str
) -> List[str]:
    """
    Turn the model's most important features into 3 readable factors.

    Features that describe the same thing (finished_sqft and log_finished_sqft)
    are reported once.
    """
    factors = []

    if feature_importance is not None and len(feature_importance) > 0:
        ranked = feature_importance[feature_importance['model'] == model_name]
        for feature in ranked['feature']:
            factor = explain_feature(feature, request)
            if factor not in factors:
                factors.append(factor)
            if len(factors) == 3:
                break

    while len(factors) < 3:
        factors.append("Additional market factors")

    return factors[:3]


def explain_feature(feature_name: str, request: EstimateRequest) -> str:
    """
    Convert a feature name into a human-readable factor for this home.

    Examples:
    - log_finished_sqft -> "Living area: 1,850 sqft"
    - zipcode_02134     -> "Location: ZIP 02134"
    """
    if 'finished_sqft' in feature_name or feature_name == 'rooms_per_1000_sqft':
        return f"Living area: {request.finished_sqft:,.0f} sqft"

    if feature_name.startswith('zipcode') or feature_name in ('latitude', 'longitude', 'zindex_value'):
        return f"Location: ZIP {request.zipcode}"

    if feature_name.startswith('tax_assessment'):
        if request.tax_assessment is not None:
            return f"Tax assessment: ${request.tax_assessment:,.0f}"
        return "Tax assessment (imputed)"

    if feature_name in ('home_age', 'year_built'):
        return f"Built in {request.year_built}" if request.year_built else "Home age (imputed)"

    if feature_name in ('bedrooms', 'bathrooms', 'bath_bed_ratio', 'total_rooms'):
        return f"{request.bedrooms} bed / {request.bathrooms:g} bath"

    if feature_name.startswith('last_sold') or feature_name == 'years_since_sold':
        if request.last_sold_price is not None:
            return f"Last sale: ${request.last_sold_price:,.0f}"
        return "Sale history (imputed)"

    if 'lot_size' in feature_name:
        if request.lot_size_sqft is not None:
            return f"Lot size: {request.lot_size_sqft:,.0f} sqft"
        return "Lot size (imputed)"

    if feature_name.startswith('use_code'):
        return f"Property type: {request.use_code}"

    return feature_name


# ==================== ERROR HANDLERS ====================

@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code
        }
    )
