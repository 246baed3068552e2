import copy
import os
from typing import Optional

from dotenv import load_dotenv

# Basic settings helper to read environment configuration.

ENV_PREFIX = "GEODISAMBIG_"


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _as_float(val: str | None, default: float) -> float:
    if val is None or val.strip() == "":
        return default
    return float(val)


def _as_int(val: str | None, default: int) -> int:
    if val is None or val.strip() == "":
        return default
    return int(val)


class Settings:
    def __init__(self) -> None:
        # Snapshot location (directory holding CURRENT + versioned files)
        self.SNAPSHOT_DIR: str = _env("SNAPSHOT_DIR") or os.path.join(os.getcwd(), "data", "snapshots")

        # Candidate generation
        self.CANDIDATE_LIMIT: int = _as_int(_env("CANDIDATE_LIMIT"), 20)
        self.FUZZY_THRESHOLD: float = _as_float(_env("FUZZY_THRESHOLD"), 0.8)
        self.FUZZY_MAX_RESULTS: int = _as_int(_env("FUZZY_MAX_RESULTS"), 50)

        # Feature weights for base_score
        self.WEIGHT_NAME_MATCH: float = _as_float(_env("WEIGHT_NAME_MATCH"), 0.45)
        self.WEIGHT_POPULATION: float = _as_float(_env("WEIGHT_POPULATION"), 0.35)
        self.WEIGHT_KIND_PRIOR: float = _as_float(_env("WEIGHT_KIND_PRIOR"), 0.10)
        self.WEIGHT_SOURCE_PRIOR: float = _as_float(_env("WEIGHT_SOURCE_PRIOR"), 0.10)
        self.ALIAS_MATCH_QUALITY: float = _as_float(_env("ALIAS_MATCH_QUALITY"), 0.9)
        self.NULL_POPULATION_SIGNAL: float = _as_float(_env("NULL_POPULATION_SIGNAL"), 0.05)

        # Coherence pass
        self.CONTAINMENT_BONUS: float = _as_float(_env("CONTAINMENT_BONUS"), 0.25)
        self.PROXIMITY_BONUS: float = _as_float(_env("PROXIMITY_BONUS"), 0.10)
        self.PROXIMITY_THRESHOLD_M: float = _as_float(_env("PROXIMITY_THRESHOLD_M"), 50_000.0)
        self.MAX_COHERENCE_BONUS: float = _as_float(_env("MAX_COHERENCE_BONUS"), 0.5)

        # Confidence / result shaping
        self.RESOLVE_THRESHOLD: float = _as_float(_env("RESOLVE_THRESHOLD"), 0.4)
        self.MAX_ALTERNATES: int = _as_int(_env("MAX_ALTERNATES"), 5)

        # Latency + concurrency
        self.ARTICLE_DEADLINE_MS: float = _as_float(_env("ARTICLE_DEADLINE_MS"), 100.0)
        self.WORKER_COUNT: int = _as_int(_env("WORKER_COUNT"), 4)

        # Authoritative source fallback ("disabled" or "background")
        self.FALLBACK_MODE: str = (_env("FALLBACK_MODE") or "disabled").lower()
        self.AUTHORITATIVE_DB_URL: Optional[str] = _env("AUTHORITATIVE_DB_URL")
        self.BACKFILL_QUEUE_SIZE: int = _as_int(_env("BACKFILL_QUEUE_SIZE"), 1000)
        self.BACKFILL_CACHE_PATH: str = _env("BACKFILL_CACHE_PATH") or os.path.join(
            os.getcwd(), "data", "backfill_cache.sqlite"
        )
        self.BACKFILL_CACHE_TTL_SECONDS: int = _as_int(_env("BACKFILL_CACHE_TTL_SECONDS"), 30 * 24 * 3600)

        # Offline snapshot build
        self.DEDUP_PROXIMITY_KM: float = _as_float(_env("DEDUP_PROXIMITY_KM"), 5.0)
        self.LOG_DRIFT: bool = _as_bool(_env("LOG_DRIFT"), True)

    @property
    def fallback_enabled(self) -> bool:
        return self.FALLBACK_MODE == "background" and bool(self.AUTHORITATIVE_DB_URL)

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with the given attributes replaced (unknown names are rejected)."""
        clone = copy.copy(self)
        for key, value in overrides.items():
            if not hasattr(clone, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(clone, key, value)
        return clone


def load_settings(env_path: Optional[str] = None) -> Settings:
    """Load a .env file (if present) and build Settings from the environment."""
    load_dotenv(env_path)
    return Settings()
