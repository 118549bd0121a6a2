"""
Public address list scraping and normalization.

The address list is published as a CSV or Excel file, usually linked from an
HTML landing page. Some sources only render it as an HTML table. All three
shapes end up as the same normalized frame:

    street | city | state | zipcode | citystatezip

which is exactly what the deep-search API wants (`address` + `citystatezip`).
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Optional, Union
from urllib.parse import urljoin

import pandas as pd
import requests
from bs4 import BeautifulSoup


logger = logging.getLogger(__name__)

CSV_SUFFIXES = (".csv", ".txt")
EXCEL_SUFFIXES = (".xls", ".xlsx")

COLUMN_ALIASES = {
    "street": ["street", "address", "street address", "site address", "property address", "full address", "location"],
    "city": ["city", "town", "municipality", "city name"],
    "state": ["state", "st", "state code"],
    "zipcode": ["zip", "zipcode", "zip code", "postal code", "postcode"],
    "citystatezip": ["citystatezip", "city state zip"],
}

NORMALIZED_COLUMNS = ["street", "city", "state", "zipcode", "citystatezip"]


class AddressListError(Exception):
    """The address list could not be fetched or understood."""


def address_key(street: str, citystatezip: str) -> str:
    """Case-insensitive identity of an address across runs."""
    return f"{' '.join(str(street).split())}|{' '.join(str(citystatezip).split())}".lower()


def _file_kind(name: str) -> Optional[str]:
    path = name.lower().split("#")[0].split("?")[0]
    if path.endswith(CSV_SUFFIXES):
        return "csv"
    if path.endswith(EXCEL_SUFFIXES):
        return "excel"
    return None


def _kind_from_content_type(content_type: Optional[str]) -> Optional[str]:
    content_type = (content_type or "").lower()
    if "csv" in content_type:
        return "csv"
    if "spreadsheet" in content_type or "excel" in content_type:
        return "excel"
    return None


def _read_bytes(content: bytes, kind: str) -> pd.DataFrame:
    if kind == "csv":
        return pd.read_csv(io.BytesIO(content), dtype=str)
    return pd.read_excel(io.BytesIO(content), dtype=str)


# ==================== FETCHING ====================

def fetch_address_list(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: int = 60,
    follow_links: bool = True
) -> pd.DataFrame:
    """
    Download the raw address list.

    CSV/Excel responses are parsed directly. Anything else is treated as an
    HTML page: the first CSV/Excel link is followed (one hop), otherwise the
    first <table> on the page is read.

    Args:
        url: Address list file or landing page
        session: Optional requests session (shared with other calls)
        timeout: Request timeout in seconds
        follow_links: Whether an HTML page may be followed to a linked file

    Returns:
        Raw DataFrame as published (columns not yet normalized)
    """
    session = session or requests.Session()

    logger.info("Fetching address list from %s", url)
    response = session.get(url, timeout=timeout)
    response.raise_for_status()

    kind = _file_kind(url) or _kind_from_content_type(response.headers.get("Content-Type"))
    if kind is not None:
        frame = _read_bytes(response.content, kind)
        logger.info("Read %s raw address rows from %s", len(frame), url)
        return frame

    return _scrape_address_page(response.text, url, session, timeout, follow_links)


def _scrape_address_page(
    html: str,
    page_url: str,
    session: requests.Session,
    timeout: int,
    follow_links: bool
) -> pd.DataFrame:
    soup = BeautifulSoup(html, "html.parser")

    if follow_links:
        for link in soup.find_all("a", href=True):
            if _file_kind(link["href"]):
                target = urljoin(page_url, link["href"])
                logger.info("Following address list link %s", target)
                return fetch_address_list(target, session=session, timeout=timeout, follow_links=False)

    table = soup.find("table")
    if table is None:
        raise AddressListError(f"No address file link or table found at {page_url}")

    frame = pd.read_html(io.StringIO(str(table)))[0]
    logger.info("Scraped %s raw address rows from the table at %s", len(frame), page_url)
    return frame


def read_address_file(path: Union[str, Path]) -> pd.DataFrame:
    """Read a locally saved CSV or Excel address list."""
    kind = _file_kind(str(path))
    if kind is None:
        raise AddressListError(f"Unsupported address list format: {path}")
    if kind == "csv":
        return pd.read_csv(path, dtype=str)
    return pd.read_excel(path, dtype=str)


# ==================== NORMALIZATION ====================

def _canonical(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", str(name).lower()).strip()


def _match_columns(columns: Iterable) -> Dict[str, str]:
    lookup = {_canonical(column): column for column in columns}
    mapping = {}
    for field, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if _canonical(alias) in lookup:
                mapping[field] = lookup[_canonical(alias)]
                break
    return mapping


def _clean(value) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = " ".join(str(value).split())
    return text or None


def _clean_zip(value) -> Optional[str]:
    """'2134', 2134.0, '02134-1234' -> '02134'. Anything else -> None."""
    text = _clean(value)
    if text is None:
        return None

    numeric = re.fullmatch(r"(\d{1,5})(\.0+)?", text)
    if numeric:
        return numeric.group(1).zfill(5)

    plus_four = re.fullmatch(r"(\d{5})-?\d{4}", text)
    if plus_four:
        return plus_four.group(1)

    return None


def _format_citystatezip(city: Optional[str], state: Optional[str], zipcode: Optional[str]) -> Optional[str]:
    # Blank parts may arrive as None or NaN depending on the column dtype
    city, state, zipcode = (part if isinstance(part, str) else None for part in (city, state, zipcode))
    if not city and not zipcode:
        return None
    place = ", ".join(part for part in (city, state) if part)
    if zipcode:
        place = f"{place} {zipcode}".strip()
    return place


def normalize_addresses(df: pd.DataFrame, default_state: str = "") -> pd.DataFrame:
    """
    Map a raw address list onto the normalized address columns.

    Rows without a street, or without anything to locate the street by
    (city, ZIP or a combined city/state/ZIP column), are dropped. Duplicate
    addresses are collapsed.

    Args:
        df: Raw address list
        default_state: State to assume when the list has none (e.g. a city list)

    Returns:
        DataFrame with NORMALIZED_COLUMNS
    """
    mapping = _match_columns(df.columns)
    if "street" not in mapping:
        raise AddressListError(f"No street/address column among {list(df.columns)}")

    original_count = len(df)
    out = pd.DataFrame(index=df.index)
    out["street"] = df[mapping["street"]].map(_clean)

    for field in ("city", "state"):
        out[field] = df[mapping[field]].map(_clean) if field in mapping else None

    out["state"] = out["state"].map(lambda v: v.upper() if isinstance(v, str) else None)
    if default_state:
        out["state"] = out["state"].fillna(default_state.upper())

    out["zipcode"] = df[mapping["zipcode"]].map(_clean_zip) if "zipcode" in mapping else None

    combined = df[mapping["citystatezip"]].map(_clean) if "citystatezip" in mapping else None
    citystatezip = []
    for i, (city, state, zipcode) in enumerate(zip(out["city"], out["state"], out["zipcode"])):
        formatted = _format_citystatezip(city, state, zipcode)
        if formatted is None and combined is not None:
            formatted = combined.iloc[i]
        citystatezip.append(formatted)
    out["citystatezip"] = citystatezip

    out = out.dropna(subset=["street", "citystatezip"])
    keys = [address_key(s, c) for s, c in zip(out["street"], out["citystatezip"])]
    out = out.loc[~pd.Series(keys, index=out.index).duplicated()]
    out = out[NORMALIZED_COLUMNS].reset_index(drop=True)

    logger.info(
        "Normalized %s of %s raw address rows (%s dropped as blank or duplicate)",
        len(out), original_count, original_count - len(out)
    )
    return out


def sample_addresses(
    df: pd.DataFrame,
    n: int,
    random_seed: int = 42,
    exclude: Optional[Iterable[str]] = None
) -> pd.DataFrame:
    """
    Draw a reproducible sample of addresses without replacement.

    Args:
        df: Normalized address list
        n: Sample size (the whole pool is returned when n exceeds it)
        random_seed: Seed for reproducibility
        exclude: Address keys to leave out (already queried)

    Returns:
        Sampled DataFrame
    """
    pool = df
    if exclude:
        excluded = set(exclude)
        keep = [address_key(s, c) not in excluded for s, c in zip(df["street"], df["citystatezip"])]
        pool = df.loc[keep]

    if n >= len(pool):
        return pool.reset_index(drop=True)

    return pool.sample(n=n, random_state=random_seed).reset_index(drop=True)
