from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest
import requests

from zestimate_model.collection import CHECKPOINT_COLUMNS


ZIP_PREMIUMS = {
    "02134": (1.00, 42.353, -71.132, 610000),
    "02135": (1.15, 42.348, -71.157, 680000),
    "02139": (1.40, 42.364, -71.104, 820000),
    "02144": (1.20, 42.400, -71.122, 730000),
}

FAST_GBM = {
    "iterations": 60,
    "learning_rate": 0.1,
    "depth": 4,
    "loss_function": "RMSE",
    "random_seed": 42,
    "verbose": 0,
    "allow_writing_files": False,
}


def make_valuations(n: int = 200, n_missed: int = 8, seed: int = 0) -> pd.DataFrame:
    """A collection checkpoint with a known value structure."""
    rng = np.random.default_rng(seed)
    zips = rng.choice(list(ZIP_PREMIUMS), size=n)
    premium = np.array([ZIP_PREMIUMS[z][0] for z in zips])

    finished_sqft = rng.uniform(800, 3500, size=n).round()
    bedrooms = rng.integers(1, 6, size=n)
    bathrooms = np.clip(bedrooms - 1 + rng.choice([0.0, 0.5, 1.0], size=n), 1, None)
    year_built = rng.integers(1900, 2015, size=n).astype(float)
    lot_size_sqft = rng.uniform(2000, 10000, size=n).round()
    use_code = rng.choice(["SingleFamily", "Condominium"], size=n, p=[0.7, 0.3])

    zestimate = (250 * finished_sqft * premium
                 * (1 - 0.001 * (2026 - year_built))
                 * rng.uniform(0.9, 1.1, size=n)).round(-2)

    sold = [date(1995, 1, 1) + timedelta(days=int(d)) for d in rng.integers(0, 9000, size=n)]
    queried = [date(2026, 10, 1) + timedelta(days=int(d)) for d in rng.integers(0, 5, size=n)]

    df = pd.DataFrame({
        "street": [f"{100 + i} Main St" for i in range(n)],
        "citystatezip": [f"Boston, MA {z}" for z in zips],
        "queried_on": [d.isoformat() for d in queried],
        "status_code": 0,
        "message": "Request successfully processed",
        "zpid": [str(1000000 + i) for i in range(n)],
        "result_street": [f"{100 + i} Main St" for i in range(n)],
        "result_zipcode": zips,
        "result_city": "Boston",
        "result_state": "MA",
        "latitude": [ZIP_PREMIUMS[z][1] for z in zips] + rng.normal(0, 0.004, size=n),
        "longitude": [ZIP_PREMIUMS[z][2] for z in zips] + rng.normal(0, 0.004, size=n),
        "fips_county": "25025",
        "use_code": use_code,
        "tax_assessment_year": 2025,
        "tax_assessment": (zestimate * rng.uniform(0.75, 0.95, size=n)).round(-2),
        "year_built": year_built,
        "lot_size_sqft": lot_size_sqft,
        "finished_sqft": finished_sqft,
        "bathrooms": bathrooms,
        "bedrooms": bedrooms,
        "total_rooms": bedrooms + rng.integers(2, 5, size=n),
        "last_sold_date": [d.isoformat() for d in sold],
        "last_sold_price": (zestimate * rng.uniform(0.5, 0.8, size=n)).round(-3),
        "zestimate": zestimate,
        "zestimate_low": (zestimate * 0.92).round(-2),
        "zestimate_high": (zestimate * 1.08).round(-2),
        "zestimate_last_updated": "2026-09-30",
        "value_change_30d": 1500.0,
        "percentile": 50.0,
        "region_name": "Allston",
        "region_type": "neighborhood",
        "zindex_value": [float(ZIP_PREMIUMS[z][3]) for z in zips] + rng.choice([-20000.0, 0.0, 15000.0], size=n),
    })

    # Gaps the imputer has to fill
    df.loc[df.index[:10], "year_built"] = np.nan
    df.loc[df.index[10:25], "lot_size_sqft"] = np.nan
    df.loc[df.index[25:35], "tax_assessment"] = np.nan
    df.loc[df.index[35:55], ["last_sold_date", "last_sold_price"]] = None

    # Non-residential parcels are filtered out before modeling
    df.loc[df.index[-5:], "use_code"] = "VacantResidentialLand"

    missed = pd.DataFrame({
        "street": [f"{900 + i} Nowhere Rd" for i in range(n_missed)],
        "citystatezip": "Boston, MA 02134",
        "queried_on": "2026-10-01",
        "status_code": 508,
        "message": "No exact match found for input address",
    })

    return pd.concat([df, missed], ignore_index=True).reindex(columns=CHECKPOINT_COLUMNS)


@pytest.fixture(scope="session")
def trained(tmp_path_factory):
    """One full analysis run shared by the model and API tests."""
    from zestimate_model.report import run_analysis

    out_dir = tmp_path_factory.mktemp("analysis")
    artifact_path = out_dir / "zestimate_model.pkl"
    result = run_analysis(
        make_valuations(),
        artifact_path=str(artifact_path),
        output_dir=str(out_dir / "report"),
        gbm_hyperparameters=FAST_GBM,
    )
    return result, artifact_path


# ==================== DEEP-SEARCH XML ====================

def deep_search_xml(code: int = 0, text: str = "Request successfully processed",
                    result: str = "", limit_warning: bool = False) -> bytes:
    warning = "<limit-warning>true</limit-warning>" if limit_warning else ""
    response = f"<response><results>{result}</results></response>" if result else ""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<SearchResults:searchresults '
        'xmlns:SearchResults="http://www.zillow.com/static/xsd/SearchResults.xsd">'
        "<request><address>2114 Bigelow Ave</address><citystatezip>Seattle, WA</citystatezip></request>"
        f"<message><text>{text}</text><code>{code}</code>{warning}</message>"
        f"{response}"
        "</SearchResults:searchresults>"
    ).encode("utf-8")


RESULT_XML = """
<result>
  <zpid>48749425</zpid>
  <address>
    <street>2114 Bigelow Ave N</street>
    <zipcode>98109</zipcode>
    <city>Seattle</city>
    <state>WA</state>
    <latitude>47.637933</latitude>
    <longitude>-122.347938</longitude>
  </address>
  <FIPScounty>53033</FIPScounty>
  <useCode>SingleFamily</useCode>
  <taxAssessmentYear>2008</taxAssessmentYear>
  <taxAssessment>1054000.0</taxAssessment>
  <yearBuilt>1924</yearBuilt>
  <lotSizeSqFt>4680</lotSizeSqFt>
  <finishedSqFt>3470</finishedSqFt>
  <bathrooms>3.0</bathrooms>
  <bedrooms>4</bedrooms>
  <totalRooms>7</totalRooms>
  <lastSoldDate>11/26/2008</lastSoldDate>
  <lastSoldPrice currency="USD">1025000</lastSoldPrice>
  <zestimate>
    <amount currency="USD">1219500</amount>
    <last-updated>11/03/2009</last-updated>
    <valueChange duration="30" currency="USD">-41500</valueChange>
    <valuationRange>
      <low currency="USD">1024380</low>
      <high currency="USD">1378035</high>
    </valuationRange>
    <percentile>0</percentile>
  </zestimate>
  <localRealEstate>
    <region id="271856" type="neighborhood" name="East Queen Anne">
      <zindexValue>525,397</zindexValue>
    </region>
  </localRealEstate>
</result>
"""

SPARSE_RESULT_XML = """
<result>
  <zpid>2077</zpid>
  <address><street>1 Pine St</street><zipcode>02134</zipcode></address>
  <lastSoldDate>12/31/1969</lastSoldDate>
  <finishedSqFt>n/a</finishedSqFt>
  <zestimate><amount currency="USD"></amount></zestimate>
</result>
"""


# ==================== FAKE HTTP ====================

class FakeResponse:
    def __init__(self, content: bytes = b"", status_code: int = 200, headers=None):
        self.content = content
        self.text = content.decode("utf-8")
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeSession:
    """Routes GETs by URL (dict) or answers them in order (list)."""

    def __init__(self, responses):
        self.responses = responses
        self.headers = {}
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        if isinstance(self.responses, dict):
            return self.responses[url]
        return self.responses.pop(0)
