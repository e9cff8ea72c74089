from functools import lru_cache
from typing import Dict, List, Literal, Optional
import os
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EnvName = Literal["development", "production"]

# Lanes a blend profile may weight, in table order
BLEND_LANES = ("trending", "new", "personalized", "collaborative", "similar")
TIE_BREAK_KEYS = ("upvotes", "created_at", "product_id")


def _env_file_for(app_env: EnvName) -> str:
    return ".env.development" if app_env == "development" else ".env.production"


class CacheOptions(BaseModel):
    default_ttl_seconds: int = 3600
    auth_time_window_ms: int = 180_000           # 3 min buckets for signed-in users
    anon_time_window_ms: int = 900_000           # 15 min buckets for visitors
    max_key_len: int = 250
    scan_batch_size: int = 500                   # COUNT hint per SCAN call
    max_scan_batches: int = 200                  # pattern delete budget per call
    lock_ttl: int = 20                           # seconds; cross-replica dogpile lock

    model_config = {"frozen": True}


class TrendingOptions(BaseModel):
    default_window_days: int = 7

    model_config = {"frozen": True}


class BlendOptions(BaseModel):
    profiles: Dict[str, Dict[str, float]] = Field(default_factory=lambda: {
        "standard": {"trending": 0.30, "new": 0.15, "personalized": 0.30, "collaborative": 0.15, "similar": 0.10},
        "discovery": {"trending": 0.15, "new": 0.25, "personalized": 0.15, "collaborative": 0.10, "similar": 0.35},
        "trending": {"trending": 0.60, "new": 0.20, "personalized": 0.10, "collaborative": 0.05, "similar": 0.05},
    })
    # At most this many blended items per category; None disables the cap
    max_per_category: Optional[int] = Field(3, ge=1)
    # The best item of this many top-weighted lanes is always kept
    min_sources: int = Field(3, ge=0)

    model_config = {"frozen": True}

    @field_validator("profiles")
    @classmethod
    def _known_lanes(cls, v: Dict[str, Dict[str, float]]):
        for name, weights in v.items():
            unknown = set(weights) - set(BLEND_LANES)
            if unknown:
                raise ValueError(f"blend profile {name!r} names unknown lanes {sorted(unknown)}")
            if any(w < 0 for w in weights.values()):
                raise ValueError(f"blend profile {name!r} has a negative weight")
        return v


class SearchOptions(BaseModel):
    min_score: float = 0.1
    field_weights: Dict[str, float] = Field(default_factory=lambda: {
        "name": 12,
        "tags": 9,
        "category_name": 7,
        "tagline": 6,
        "description": 2,
    })
    # Minimum semantic similarity per field type
    thresholds: Dict[str, float] = Field(default_factory=lambda: {
        "name": 0.7,
        "tags": 0.6,
        "description": 0.8,
    })
    max_expansions: int = 40
    upvote_boost: float = 0.3
    upvote_boost_cap: float = 10
    view_boost: float = 0.015
    view_boost_cap: float = 5
    recency_boost: float = 0.2
    featured_boost: float = 6

    model_config = {"frozen": True}


class ScoreOptions(BaseModel):
    tie_breaks: List[str] = Field(default_factory=lambda: list(TIE_BREAK_KEYS))

    model_config = {"frozen": True}

    @field_validator("tie_breaks")
    @classmethod
    def _known_keys(cls, v: List[str]):
        unknown = [k for k in v if k not in TIE_BREAK_KEYS]
        if unknown:
            raise ValueError(f"unknown tie-break keys {unknown}")
        return v


class StrategyTTLs(BaseModel):
    trending: int = 3600
    hybrid: int = 1800
    similar: int = 3600
    personalized: int = 900
    new: int = 1800

    model_config = {"frozen": True}


class RequestOptions(BaseModel):
    default_timeout_s: float = 5.0
    retry_after_s: int = 30
    collaborators_k: int = 25
    interaction_window_days: int = 90

    model_config = {"frozen": True}


class Settings(BaseSettings):

    # Core
    APP_ENV: EnvName = "development"
    APP_NAME: str = "DiscoveryRanking"
    DEBUG: bool = False
    GIT_SHA: str = "unknown"

    # Mongo
    MONGO_URI: str = ""
    MONGO_DB: str = "discovery"

    # Redis
    REDIS_URL: str = ""

    # Ranking options (loaded once, immutable)
    cache: CacheOptions = Field(default_factory=CacheOptions)
    trending: TrendingOptions = Field(default_factory=TrendingOptions)
    blend: BlendOptions = Field(default_factory=BlendOptions)
    search: SearchOptions = Field(default_factory=SearchOptions)
    score: ScoreOptions = Field(default_factory=ScoreOptions)
    strategy_ttls: StrategyTTLs = Field(default_factory=StrategyTTLs)
    request: RequestOptions = Field(default_factory=RequestOptions)

    # API
    api_prefix: str = "/api"

    # pydantic-settings config will be set dynamically in the factory below.
    # Case-insensitive: CACHE__DEFAULT_TTL_SECONDS must reach cache.default_ttl_seconds
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        env_nested_delimiter="__",
        frozen=True,
    )

    @model_validator(mode="after")
    def _has_standard_blend(self):
        if "standard" not in self.blend.profiles:
            raise ValueError("blend.profiles must define the 'standard' profile")
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Factory that chooses the right .env file based on APP_ENV.
    Cache makes it cheap to inject via FastAPI dependencies.
    """
    app_env: EnvName = os.getenv("APP_ENV", "development")  # earliest switch
    env_file = _env_file_for(app_env)
    return Settings(
                _env_file=env_file,  # load .env.development or .env.production
                _env_file_encoding="utf-8"
    )
