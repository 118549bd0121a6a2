"""
Central configuration for the Zestimate study.

Values default to sane local settings but can be overridden via environment
variables. The CLI flags override these again for a single run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from . import __version__


DEFAULT_API_URL = "https://www.zillow.com/webservice/GetDeepSearchResults.htm"

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"
DEFAULT_ARTIFACT_PATH = BASE_DIR / "models" / "zestimate_model.pkl"


@dataclass
class StudySettings:
    zws_id: str
    api_url: str
    address_list_url: str
    default_state: str
    daily_call_limit: int
    sample_size: int
    throttle_seconds: float
    request_timeout: int
    random_seed: int
    data_dir: Path
    artifact_path: Path
    user_agent: str

    @property
    def checkpoint_path(self) -> Path:
        """Every queried address, hits and misses, lives here."""
        return self.data_dir / "valuations.csv"

    @property
    def address_cache_path(self) -> Path:
        return self.data_dir / "addresses.csv"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.artifact_path.parent.mkdir(parents=True, exist_ok=True)


def _env(key: str, default: str) -> str:
    return os.environ.get(key, default)


def _float_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except ValueError:
        return default


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except ValueError:
        return default


def load_settings() -> StudySettings:
    """Build settings from the current environment."""
    return StudySettings(
        zws_id=_env("ZILLOW_ZWSID", ""),
        api_url=_env("ZILLOW_API_URL", DEFAULT_API_URL),
        address_list_url=_env("ADDRESS_LIST_URL", ""),
        default_state=_env("ADDRESS_DEFAULT_STATE", ""),
        daily_call_limit=_int_env("ZILLOW_DAILY_CALL_LIMIT", 1000),
        sample_size=_int_env("ADDRESS_SAMPLE_SIZE", 1000),
        throttle_seconds=_float_env("ZILLOW_THROTTLE_SECONDS", 1.0),
        request_timeout=_int_env("ZILLOW_REQUEST_TIMEOUT", 30),
        random_seed=_int_env("RANDOM_SEED", 42),
        data_dir=Path(_env("ZESTIMATE_DATA_DIR", str(DEFAULT_DATA_DIR))),
        artifact_path=Path(_env("ZESTIMATE_ARTIFACT_PATH", str(DEFAULT_ARTIFACT_PATH))),
        user_agent=_env("SCRAPER_USER_AGENT", f"ZestimateModel/{__version__}"),
    )


settings = load_settings()
