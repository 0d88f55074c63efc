"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import ProductCandidate, SelectedItem


class FailureKind(str, Enum):
    """Why a single provider attempt did not produce a usable result."""

    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    PROVIDER_REFUSAL = "provider_refusal"
    EMPTY_OR_UNPARSEABLE = "empty_or_unparseable_response"
    SCHEMA_VIOLATION = "schema_violation"
    CONSTRAINT_VIOLATION = "constraint_violation"


class AttemptPhase(str, Enum):
    FRESH = "fresh"
    DEGRADED = "degraded"
    SHRUNK = "shrunk"
    EXHAUSTED = "exhausted"


class CompressionLevel(IntEnum):
    """How much candidate detail goes into the prompt."""

    FULL = 0
    COMPACT = 1
    MINIMAL = 2


# ---------------------------------------------------------------------------
# Provider call results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderPayload:
    """A usable textual reply from the provider."""

    text: str
    finish_reason: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class ProviderFailure:
    """A provider call that produced nothing usable."""

    kind: FailureKind
    detail: str
    status_code: Optional[int] = None
    error_body: Optional[Any] = None
    structurally_empty: bool = False
    elapsed_ms: float = 0.0


ProviderReply = Union[ProviderPayload, ProviderFailure]


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedValid:
    """Provider text that decoded to JSON (possibly after repair)."""

    data: Any
    stage: str


@dataclass(frozen=True)
class ParsedMalformed:
    """Provider text no repair stage could decode; raw kept for diagnostics."""

    raw: str
    reason: str


ParsedProvider = Union[ParsedValid, ParsedMalformed]


@dataclass
class StructuredResult:
    """Validated provider selection, before or after constraint enforcement."""

    trust_fallback: bool
    items: List[SelectedItem]
    reasoning: Optional[str] = None
    legacy: bool = False
    dropped: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationFailure:
    kind: FailureKind
    detail: str


# ---------------------------------------------------------------------------
# Attempt bookkeeping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttemptFailure:
    """One failed attempt, with enough context to diagnose it from logs."""

    kind: FailureKind
    detail: str
    attempt: int
    elapsed_ms: float
    payload_chars: int
    candidate_count: int
    status_code: Optional[int] = None
    structurally_empty: bool = False

    def describe(self) -> str:
        return f"{self.kind.value}: {self.detail}"


@dataclass(frozen=True)
class AttemptState:
    """
    Request-scoped loop state. Each transition produces a new value; the
    orchestrator never mutates one in place.
    """

    attempt: int
    phase: AttemptPhase
    timeout_s: float
    compression: CompressionLevel
    candidates: Tuple[ProductCandidate, ...]
    last_failure: Optional[AttemptFailure] = None
    failures: Tuple[AttemptFailure, ...] = ()


@dataclass(frozen=True)
class BundleAllocation:
    """Per-slot resolution of a bundle selection."""

    items: List[SelectedItem]
    missing_slots: List[int]
    total_price: float
    budget_total: Optional[float]
    budget_exceeded: bool
