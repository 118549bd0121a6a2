"""
Client for the Zillow GetDeepSearchResults web service.

One call = one address. The service answers with an XML document whose
<message><code> says whether the call worked:

    0        success
    1 - 4    service-level failure (server error, bad ZWSID, service down,
             API call unavailable); retrying other addresses will not help
    500+     address-level miss (unmatched address, no coverage, ...)

Every property field in the answer is optional, so the parser reads each one
by hand and turns missing or malformed values into None.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

import requests
from lxml import etree


logger = logging.getLogger(__name__)

SERVICE_ERROR_CODES = {
    1: "Service error",
    2: "Invalid ZWSID",
    3: "Web services currently unavailable",
    4: "API call currently unavailable",
}

ADDRESS_ERROR_CODES = {
    500: "Invalid or missing address",
    501: "Invalid or missing city/state/ZIP",
    502: "No results found",
    503: "Failed to resolve city, state or ZIP code",
    504: "No coverage for specified area",
    505: "Timeout",
    506: "Address string too long",
    507: "No exact match found",
    508: "No exact match found for input address",
}

RECORD_FIELDS = [
    "zpid", "street", "zipcode", "city", "state", "latitude", "longitude",
    "fips_county", "use_code", "tax_assessment_year", "tax_assessment",
    "year_built", "lot_size_sqft", "finished_sqft", "bathrooms", "bedrooms",
    "total_rooms", "last_sold_date", "last_sold_price", "zestimate",
    "zestimate_low", "zestimate_high", "zestimate_last_updated",
    "value_change_30d", "percentile", "region_name", "region_type",
    "zindex_value",
]


class ZillowError(Exception):
    """Base class for deep-search failures."""


class ZillowConfigError(ZillowError):
    """The client cannot be used as configured."""


class ZillowServiceError(ZillowError):
    """The service refused or failed the call; further calls will not help."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class ZillowResponseError(ZillowError):
    """The response body was not a deep-search XML document."""


@dataclass
class DeepSearchResult:
    code: int
    message: str
    limit_warning: bool = False
    record: Optional[Dict[str, Any]] = field(default=None)

    @property
    def found(self) -> bool:
        return self.code == 0 and self.record is not None


# ==================== NULL-SAFE FIELD READERS ====================

def _text(node, path: str) -> Optional[str]:
    if node is None:
        return None
    found = node.find(path)
    if found is None or found.text is None:
        return None
    text = found.text.strip()
    return text or None


def _attr(node, path: str, name: str) -> Optional[str]:
    if node is None:
        return None
    found = node.find(path)
    if found is None:
        return None
    value = found.get(name)
    return value.strip() if value and value.strip() else None


def _float(node, path: str) -> Optional[float]:
    text = _text(node, path)
    if text is None:
        return None
    try:
        return float(text.replace(",", ""))
    except ValueError:
        return None


def _int(node, path: str) -> Optional[int]:
    value = _float(node, path)
    return int(value) if value is not None else None


def _date(node, path: str) -> Optional[str]:
    """MM/DD/YYYY -> ISO date string; the service's 12/31/1969 epoch means unknown."""
    text = _text(node, path)
    if text is None:
        return None
    try:
        parsed = datetime.strptime(text, "%m/%d/%Y").date()
    except ValueError:
        return None
    if parsed <= date(1970, 1, 1):
        return None
    return parsed.isoformat()


def _parse_result(result) -> Dict[str, Any]:
    address = result.find("address")
    zestimate = result.find("zestimate")
    region = result.find("localRealEstate/region")

    return {
        "zpid": _text(result, "zpid"),
        "street": _text(address, "street"),
        "zipcode": _text(address, "zipcode"),
        "city": _text(address, "city"),
        "state": _text(address, "state"),
        "latitude": _float(address, "latitude"),
        "longitude": _float(address, "longitude"),
        "fips_county": _text(result, "FIPScounty"),
        "use_code": _text(result, "useCode"),
        "tax_assessment_year": _int(result, "taxAssessmentYear"),
        "tax_assessment": _float(result, "taxAssessment"),
        "year_built": _int(result, "yearBuilt"),
        "lot_size_sqft": _float(result, "lotSizeSqFt"),
        "finished_sqft": _float(result, "finishedSqFt"),
        "bathrooms": _float(result, "bathrooms"),
        "bedrooms": _int(result, "bedrooms"),
        "total_rooms": _int(result, "totalRooms"),
        "last_sold_date": _date(result, "lastSoldDate"),
        "last_sold_price": _float(result, "lastSoldPrice"),
        "zestimate": _float(zestimate, "amount"),
        "zestimate_low": _float(zestimate, "valuationRange/low"),
        "zestimate_high": _float(zestimate, "valuationRange/high"),
        "zestimate_last_updated": _date(zestimate, "last-updated"),
        "value_change_30d": _float(zestimate, "valueChange"),
        "percentile": _float(zestimate, "percentile"),
        "region_name": region.get("name") if region is not None else None,
        "region_type": region.get("type") if region is not None else None,
        "zindex_value": _float(region, "zindexValue"),
    }


def parse_deep_search_response(content: bytes) -> DeepSearchResult:
    """
    Parse a GetDeepSearchResults XML body.

    Raises:
        ZillowResponseError: body is not XML or has no message code
        ZillowServiceError: message code 1-4
    """
    try:
        root = etree.fromstring(content)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise ZillowResponseError(f"Unparseable deep-search response: {e}") from e

    code_text = _text(root, "message/code")
    if code_text is None or not code_text.isdigit():
        raise ZillowResponseError("Deep-search response has no message code")

    code = int(code_text)
    message = _text(root, "message/text") or ""
    limit_warning = (_text(root, "message/limit-warning") or "").lower() == "true"

    if code in SERVICE_ERROR_CODES:
        raise ZillowServiceError(f"{SERVICE_ERROR_CODES[code]} (code {code}): {message}", code=code)

    if code != 0:
        return DeepSearchResult(code=code, message=message or ADDRESS_ERROR_CODES.get(code, ""),
                                limit_warning=limit_warning)

    result = root.find("response/results/result")
    if result is None:
        return DeepSearchResult(code=502, message=ADDRESS_ERROR_CODES[502], limit_warning=limit_warning)

    return DeepSearchResult(code=0, message=message, limit_warning=limit_warning,
                            record=_parse_result(result))


# ==================== CLIENT ====================

class ZillowClient:
    """Sequential deep-search client with a fixed pause between calls."""

    def __init__(
        self,
        zws_id: str,
        api_url: str,
        timeout: int = 30,
        throttle_seconds: float = 1.0,
        user_agent: str = "ZestimateModel",
        session: Optional[requests.Session] = None
    ):
        if not zws_id:
            raise ZillowConfigError("A Zillow web services ID (ZILLOW_ZWSID) is required")

        self.zws_id = zws_id
        self.api_url = api_url
        self.timeout = timeout
        self.throttle_seconds = throttle_seconds
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self.calls_made = 0
        self._last_request_ts = 0.0

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "ZillowClient":
        return cls(
            zws_id=settings.zws_id,
            api_url=settings.api_url,
            timeout=settings.request_timeout,
            throttle_seconds=settings.throttle_seconds,
            user_agent=settings.user_agent,
            session=session,
        )

    def _throttle(self):
        wait = max(0, self.throttle_seconds - (time.time() - self._last_request_ts))
        if wait > 0:
            time.sleep(wait)
        self._last_request_ts = time.time()

    def deep_search(self, street: str, citystatezip: str) -> DeepSearchResult:
        """Look up one address. Counts against the daily limit whatever the outcome."""
        params = {"zws-id": self.zws_id, "address": street, "citystatezip": citystatezip}

        self._throttle()
        self.calls_made += 1
        try:
            response = self.session.get(self.api_url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ZillowServiceError(f"Deep-search request failed: {e}") from e

        result = parse_deep_search_response(response.content)
        if result.found:
            logger.debug("zpid %s for %s, %s", result.record["zpid"], street, citystatezip)
        else:
            logger.info("No result for %s, %s (code %s: %s)", street, citystatezip, result.code, result.message)
        if result.limit_warning:
            logger.warning("Deep-search limit warning received after %s calls", self.calls_made)
        return result
