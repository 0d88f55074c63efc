from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .text_utils import parse_price


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]
LOG_DIR = PROJECT_ROOT / "logs"


# ---------------------------
# Provider
# ---------------------------

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"

TEMPERATURE = 0.2
MAX_TOKENS = 1500
BUNDLE_MAX_TOKENS = 2500

MAX_RETRIES = 1  # at most 2 provider calls per request


# ---------------------------
# Adaptive timeout (seconds)
# ---------------------------

TIMEOUT_BASE_S = 12.0
TIMEOUT_MEDIUM_S = 18.0
TIMEOUT_LARGE_S = 24.0
TIMEOUT_BUNDLE_EXTRA_S = 4.0
TIMEOUT_CAP_S = 30.0

TIMEOUT_MEDIUM_CANDIDATES = 60
TIMEOUT_LARGE_CANDIDATES = 120
TIMEOUT_MEDIUM_PAYLOAD_CHARS = 60_000
TIMEOUT_LARGE_PAYLOAD_CHARS = 120_000


# ---------------------------
# Payload compression / shrink
# ---------------------------

MAX_CANDIDATES_IN_PROMPT = 200
MAX_DESCRIPTION_CHARS = 1000
COMPACT_DESCRIPTION_CHARS = 200

COMPRESS_PAYLOAD_CHARS = 60_000
COMPRESS_CANDIDATE_COUNT = 60

SHRINK_FRACTION = 0.30
SHRINK_MIN_CANDIDATES = 40


# ---------------------------
# Cache
# ---------------------------

CACHE_TTL_HOURS = 36
CACHE_READ_TIMEOUT_S = 0.25


# ---------------------------
# Logging / observability
# ---------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL, log_dir: Optional[Path] = None) -> None:
    """
    Install the stderr sink and, when a directory is given, a rotating file sink.
    """
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(log_dir / "ranking.log", level=level, rotation="10 MB", retention=5)


# ---------------------------
# Engine configuration
# ---------------------------

class EngineConfig(BaseModel):
    """
    Runtime knobs for one engine instance.

    Built once at the service boundary (see ``from_env``) and passed down;
    nothing below the orchestrator reads the environment.
    """

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    api_url: str = OPENAI_API_URL
    feature_enabled: bool = True

    max_retries: int = Field(default=MAX_RETRIES, ge=0)
    temperature: float = TEMPERATURE
    max_tokens: int = MAX_TOKENS
    bundle_max_tokens: int = BUNDLE_MAX_TOKENS

    timeout_cap_s: float = Field(default=TIMEOUT_CAP_S, gt=0)
    compress_payload_chars: int = COMPRESS_PAYLOAD_CHARS
    compress_candidate_count: int = COMPRESS_CANDIDATE_COUNT
    shrink_fraction: float = Field(default=SHRINK_FRACTION, gt=0, lt=1)
    shrink_min_candidates: int = SHRINK_MIN_CANDIDATES
    max_candidates_in_prompt: int = MAX_CANDIDATES_IN_PROMPT

    cache_ttl_s: float = CACHE_TTL_HOURS * 3600.0
    cache_read_timeout_s: float = CACHE_READ_TIMEOUT_S

    @property
    def ai_enabled(self) -> bool:
        return self.feature_enabled and bool(self.api_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if env is None else env

        flag = (env.get("FEATURE_AI_RANKING") or "").strip().lower()
        feature_enabled = flag not in {"false", "0"}

        kwargs = {
            "api_key": env.get("OPENAI_API_KEY") or None,
            "model": env.get("OPENAI_MODEL") or DEFAULT_MODEL,
            "api_url": env.get("OPENAI_API_URL") or OPENAI_API_URL,
            "feature_enabled": feature_enabled,
        }
        if env.get("AI_RANKING_TIMEOUT_CAP_S"):
            kwargs["timeout_cap_s"] = float(env["AI_RANKING_TIMEOUT_CAP_S"])
        if env.get("AI_RANKING_CACHE_TTL_HOURS"):
            kwargs["cache_ttl_s"] = float(env["AI_RANKING_CACHE_TTL_HOURS"]) * 3600.0

        cfg = cls(**kwargs)
        logger.info(
            "AI ranking config: feature_enabled={} api_key_set={} model={}",
            cfg.feature_enabled,
            bool(cfg.api_key),
            cfg.model,
        )
        return cfg


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class ProductCandidate(BaseModel):
    """
    One catalog item eligible for a ranking request. Read-only.
    """

    model_config = ConfigDict(frozen=True)

    handle: str = Field(min_length=1)
    title: str = ""
    product_type: Optional[str] = None
    vendor: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    available: bool = True
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    option_values: Dict[str, List[str]] = Field(default_factory=dict)
    item_index: Optional[int] = Field(default=None, ge=0)

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, v):
        return parse_price(v)


class VariantConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: Optional[str] = None
    color: Optional[str] = None
    material: Optional[str] = None


class HardFacets(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: List[str] = Field(default_factory=list)
    color: List[str] = Field(default_factory=list)
    material: List[str] = Field(default_factory=list)

    def required(self) -> Dict[str, List[str]]:
        return {k: v for k, v in self.model_dump().items() if v}


class BundleItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    hard_terms: List[str] = Field(default_factory=list)
    quantity: int = Field(default=1, ge=1)
    budget_max: Optional[float] = Field(default=None, ge=0)


class HardConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    hard_terms: List[str] = Field(default_factory=list)
    hard_facets: HardFacets = Field(default_factory=HardFacets)
    avoid_terms: List[str] = Field(default_factory=list)
    trust_fallback: bool = False
    bundle_items: List[BundleItem] = Field(default_factory=list)
    total_budget: Optional[float] = Field(default=None, ge=0)


class RankingRequest(BaseModel):
    """
    Everything one ranking call needs. Immutable once constructed; malformed
    input (negative count, duplicate handles, stray strict-gate handles) is
    rejected here, before any provider call.
    """

    model_config = ConfigDict(frozen=True)

    user_intent: str = ""
    candidates: List[ProductCandidate] = Field(default_factory=list)
    result_count: int = Field(ge=0)
    variant_constraints: Optional[VariantConstraints] = None
    variant_preferences: Dict[str, str] = Field(default_factory=dict)
    include_terms: List[str] = Field(default_factory=list)
    avoid_terms: List[str] = Field(default_factory=list)
    hard_constraints: Optional[HardConstraints] = None
    strict_gate: Optional[List[ProductCandidate]] = None
    shop_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_pool(self) -> "RankingRequest":
        seen = set()
        for c in self.candidates:
            if c.handle in seen:
                raise ValueError(f"duplicate candidate handle: {c.handle!r}")
            seen.add(c.handle)

        if self.strict_gate is not None:
            stray = [c.handle for c in self.strict_gate if c.handle not in seen]
            if stray:
                raise ValueError(f"strict_gate contains {len(stray)} handle(s) not in candidates")

        if self.is_bundle:
            n_slots = len(self.hard_constraints.bundle_items)
            for c in self.candidates:
                if c.item_index is not None and c.item_index >= n_slots:
                    raise ValueError(
                        f"candidate item_index {c.item_index} outside {n_slots} bundle slots"
                    )
        return self

    @property
    def is_bundle(self) -> bool:
        return self.hard_constraints is not None and len(self.hard_constraints.bundle_items) >= 2

    @property
    def hard_terms(self) -> List[str]:
        if self.hard_constraints is None:
            return []
        return [t for t in self.hard_constraints.hard_terms if t and t.strip()]

    @property
    def all_avoid_terms(self) -> List[str]:
        terms = list(self.avoid_terms)
        if self.hard_constraints is not None:
            terms.extend(self.hard_constraints.avoid_terms)
        out: List[str] = []
        for t in terms:
            t = (t or "").strip()
            if t and t.lower() not in {x.lower() for x in out}:
                out.append(t)
        return out

    @property
    def allows_alternatives(self) -> bool:
        return bool(self.hard_constraints and self.hard_constraints.trust_fallback)


class Evidence(BaseModel):
    """
    Auditable record of why a selected item satisfies the hard constraints.
    Field aliases match the provider's camelCase JSON.
    """

    model_config = ConfigDict(populate_by_name=True)

    matched_hard_terms: List[str] = Field(alias="matchedHardTerms")
    matched_facets: Dict[str, List[str]] = Field(default_factory=dict, alias="matchedFacets")
    fields_used: List[str] = Field(default_factory=list, alias="fieldsUsed")


class SelectedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    handle: str
    label: Literal["exact", "alternative"]
    score: float = Field(ge=0, le=100)
    evidence: Evidence
    reason: str
    item_index: Optional[int] = Field(default=None, alias="itemIndex")

    @field_validator("score", mode="before")
    @classmethod
    def _score_is_numeric(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("score must be a number")
        return v

    @field_validator("handle")
    @classmethod
    def _handle_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("handle must be non-empty")
        return v


class RankingOutcome(BaseModel):
    """
    Response body for a ranking call. The only value handed back to callers.
    """

    selected_handles: List[str]
    reasoning: Optional[str] = None
    trust_fallback: bool = False
    source: Literal["provider", "fallback"]
    parse_fail_reason: Optional[str] = None
    attempts: int = 0
    budget_exceeded: bool = False


class HealthResponse(BaseModel):
    """
    Response body for GET /health.
    """

    status: str
