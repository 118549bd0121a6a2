"""
Sequential polling of the deep-search API under a daily call limit.

The service allows a fixed number of calls per day, so a full sample takes
several days to collect. Every call (hit or miss) is written to a CSV
checkpoint together with the day it was made, which lets a later run:

- skip addresses that were already queried, and
- know how much of today's budget an earlier run has already used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional, Tuple, Union

import pandas as pd

from .addresses import address_key
from .zillow import RECORD_FIELDS, ZillowClient, ZillowResponseError, ZillowServiceError


logger = logging.getLogger(__name__)

RESULT_ADDRESS_PARTS = ("street", "city", "state", "zipcode")


def _column_name(field: str) -> str:
    """Prefix the address parts returned by the service so they don't clobber the query."""
    return f"result_{field}" if field in RESULT_ADDRESS_PARTS else field


CHECKPOINT_COLUMNS = ["street", "citystatezip", "queried_on", "status_code", "message"] + [
    _column_name(name) for name in RECORD_FIELDS
]


@dataclass
class CollectionSummary:
    queried: int
    found: int
    missed: int
    remaining_budget: int
    stopped_reason: str


def load_checkpoint(path: Union[str, Path]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        return pd.DataFrame(columns=CHECKPOINT_COLUMNS)
    return pd.read_csv(path, dtype={"zpid": str, "result_zipcode": str, "fips_county": str})


def save_checkpoint(df: pd.DataFrame, path: Union[str, Path]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def queried_keys(checkpoint: pd.DataFrame) -> set:
    return {address_key(s, c) for s, c in zip(checkpoint["street"], checkpoint["citystatezip"])}


def remaining_calls(checkpoint: pd.DataFrame, daily_limit: int, today: Optional[date] = None) -> int:
    """Calls left today once the checkpoint's calls from today are counted."""
    today = today or date.today()
    if checkpoint.empty:
        return daily_limit
    used_today = int((checkpoint["queried_on"].astype(str) == today.isoformat()).sum())
    return max(0, daily_limit - used_today)


def collect_valuations(
    addresses: pd.DataFrame,
    client: ZillowClient,
    checkpoint_path: Union[str, Path],
    daily_limit: int = 1000,
    today: Optional[date] = None,
    stop_on_limit_warning: bool = True,
    save_every: int = 25
) -> Tuple[pd.DataFrame, CollectionSummary]:
    """
    Query each address once, in order, until today's budget is spent.

    Args:
        addresses: Normalized addresses (street, citystatezip)
        client: Deep-search client
        checkpoint_path: CSV checkpoint (read, extended and written back)
        daily_limit: Calls the service allows per day
        today: Date to book the calls under (defaults to today)
        stop_on_limit_warning: Stop as soon as the service warns about the limit
        save_every: Write the checkpoint after this many new calls

    Returns:
        (full checkpoint frame, CollectionSummary)
    """
    today = today or date.today()
    checkpoint = load_checkpoint(checkpoint_path)
    already_queried = queried_keys(checkpoint)
    budget = remaining_calls(checkpoint, daily_limit, today)

    pending = [
        (street, citystatezip)
        for street, citystatezip in zip(addresses["street"], addresses["citystatezip"])
        if address_key(street, citystatezip) not in already_queried
    ]
    logger.info(
        "%s addresses pending (%s already queried); %s of %s calls left today",
        len(pending), len(addresses) - len(pending), budget, daily_limit
    )

    rows = []
    found = 0
    stopped_reason = "completed"

    def flush():
        merged = pd.concat([checkpoint, pd.DataFrame(rows, columns=CHECKPOINT_COLUMNS)], ignore_index=True) \
            if rows else checkpoint
        save_checkpoint(merged, checkpoint_path)
        return merged

    try:
        for street, citystatezip in pending:
            if budget <= 0:
                stopped_reason = "daily limit reached"
                break

            # A failed call still counts against today's limit; the address is
            # left out of the checkpoint so a later run retries it
            try:
                result = client.deep_search(street, citystatezip)
            except ZillowServiceError as e:
                logger.error("Stopping collection: %s", e)
                stopped_reason = f"service error: {e}"
                budget -= 1
                break
            except ZillowResponseError as e:
                logger.error("Stopping collection at %s, %s: %s", street, citystatezip, e)
                stopped_reason = f"bad response: {e}"
                budget -= 1
                break

            budget -= 1
            row = {
                "street": street,
                "citystatezip": citystatezip,
                "queried_on": today.isoformat(),
                "status_code": result.code,
                "message": result.message,
            }
            if result.record is not None:
                row.update({_column_name(key): value for key, value in result.record.items()})
                found += 1
            rows.append(row)

            if save_every and len(rows) % save_every == 0:
                flush()

            if result.limit_warning and stop_on_limit_warning:
                stopped_reason = "limit warning"
                break
    finally:
        checkpoint = flush()

    summary = CollectionSummary(
        queried=len(rows),
        found=found,
        missed=len(rows) - found,
        remaining_budget=max(0, budget),
        stopped_reason=stopped_reason,
    )
    logger.info(
        "Collection finished (%s): %s queried, %s found, %s missed, %s calls left today",
        summary.stopped_reason, summary.queried, summary.found, summary.missed, summary.remaining_budget
    )
    return checkpoint, summary
