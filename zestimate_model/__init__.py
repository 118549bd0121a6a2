"""
Zestimate Model

Data-science study of a home valuation estimate with:
- Public address list scraping
- Budgeted, resumable polling of the Zillow deep-search API
- Leak-safe cleaning and chained-equations imputation
- Backward-selected OLS, elastic net and CatBoost model comparison
- FastAPI deployment of the fitted models
"""

__version__ = "1.0.0"
