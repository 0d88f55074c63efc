"""
Ranking orchestration: the attempt loop around the provider.

``rank_products`` always returns a RankingOutcome. At most
``1 + config.max_retries`` provider calls are made, strictly one after the
other; the retry is shaped by how the first call failed:

* structurally empty reply on a large candidate set -> Shrunk (drop a
  fixed share of candidates, keep every bundle slot represented)
* anything else -> Degraded (one step more payload compression)

When the budget is spent the deterministic fallback ranker answers, over
the strict-gate pool when one was supplied.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from .bundle import BundleResolutionError, resolve_bundle
from .cache import CacheGateway, generate_cache_key, read_cache, schedule_cache_write
from .config import (
    TIMEOUT_BASE_S,
    TIMEOUT_BUNDLE_EXTRA_S,
    TIMEOUT_LARGE_CANDIDATES,
    TIMEOUT_LARGE_PAYLOAD_CHARS,
    TIMEOUT_LARGE_S,
    TIMEOUT_MEDIUM_CANDIDATES,
    TIMEOUT_MEDIUM_PAYLOAD_CHARS,
    TIMEOUT_MEDIUM_S,
    EngineConfig,
    ProductCandidate,
    RankingOutcome,
    RankingRequest,
    SelectedItem,
)
from .diversity import ensure_result_diversity, measure_result_diversity
from .fallback import FALLBACK_REASONING, deterministic_bundle_rank, deterministic_rank
from .json_repair import parse_provider_json
from .pipeline_types import (
    AttemptFailure,
    AttemptPhase,
    AttemptState,
    CompressionLevel,
    FailureKind,
    ParsedMalformed,
    ProviderFailure,
    ValidationFailure,
)
from .provider import ProviderClient
from .request_builder import build_payload, payload_size, should_compress
from .validation import HandleIndex, validate_structure, verify_constraints


@dataclass(frozen=True)
class _AttemptSuccess:
    items: List[SelectedItem]
    trust_fallback: bool
    reasoning: Optional[str]
    budget_exceeded: bool = False


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_timeout_s(n_candidates: int, payload_chars: int, is_bundle: bool, config: EngineConfig) -> float:
    """Step function of candidate count and payload size, capped."""
    if n_candidates > TIMEOUT_LARGE_CANDIDATES or payload_chars > TIMEOUT_LARGE_PAYLOAD_CHARS:
        timeout = TIMEOUT_LARGE_S
    elif n_candidates > TIMEOUT_MEDIUM_CANDIDATES or payload_chars > TIMEOUT_MEDIUM_PAYLOAD_CHARS:
        timeout = TIMEOUT_MEDIUM_S
    else:
        timeout = TIMEOUT_BASE_S
    if is_bundle:
        timeout += TIMEOUT_BUNDLE_EXTRA_S
    return min(timeout, config.timeout_cap_s)


def shrink_candidates(
    candidates: Sequence[ProductCandidate],
    fraction: float,
    is_bundle: bool,
) -> Tuple[ProductCandidate, ...]:
    """
    Drop ``fraction`` of the set from the tail, preserving order. In bundle
    mode each slot is trimmed on its own and keeps at least one candidate.
    """
    def _keep(n: int) -> int:
        return max(1, n - int(n * fraction)) if n else 0

    if not is_bundle:
        return tuple(candidates[:_keep(len(candidates))])

    per_slot: Dict[Any, int] = {}
    for c in candidates:
        per_slot[c.item_index] = per_slot.get(c.item_index, 0) + 1
    budget = {slot: _keep(n) for slot, n in per_slot.items()}

    kept: List[ProductCandidate] = []
    for c in candidates:
        if budget[c.item_index] > 0:
            kept.append(c)
            budget[c.item_index] -= 1
    return tuple(kept)


def escalate(state: AttemptState, failure: AttemptFailure, request: RankingRequest, config: EngineConfig) -> AttemptState:
    """Next loop state after a failed attempt."""
    failures = state.failures + (failure,)
    if state.attempt >= config.max_retries:
        return replace(state, phase=AttemptPhase.EXHAUSTED, last_failure=failure, failures=failures)

    if failure.structurally_empty and len(state.candidates) >= config.shrink_min_candidates:
        return replace(
            state,
            attempt=state.attempt + 1,
            phase=AttemptPhase.SHRUNK,
            candidates=shrink_candidates(state.candidates, config.shrink_fraction, request.is_bundle),
            last_failure=failure,
            failures=failures,
        )

    return replace(
        state,
        attempt=state.attempt + 1,
        phase=AttemptPhase.DEGRADED,
        compression=CompressionLevel(min(state.compression + 1, CompressionLevel.MINIMAL)),
        last_failure=failure,
        failures=failures,
    )


def _prepare(request: RankingRequest, state: AttemptState, config: EngineConfig) -> Tuple[Dict[str, Any], int, AttemptState]:
    level = state.compression
    payload = build_payload(request, state.candidates, level, config)
    size = payload_size(payload)

    if state.phase == AttemptPhase.FRESH and level == CompressionLevel.FULL:
        if should_compress(request, len(state.candidates), size, config):
            level = CompressionLevel.COMPACT
            payload = build_payload(request, state.candidates, level, config)
            size = payload_size(payload)

    timeout = compute_timeout_s(len(state.candidates), size, request.is_bundle, config)
    if state.last_failure is not None and state.last_failure.kind == FailureKind.TIMEOUT:
        timeout = min(max(timeout, state.timeout_s), config.timeout_cap_s)
    return payload, size, replace(state, compression=level, timeout_s=timeout)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

def fallback_outcome(request: RankingRequest, reason: str, attempts: int = 0) -> RankingOutcome:
    """Deterministic answer over the authoritative scope (strict gate, else pool)."""
    scope = request.strict_gate if request.strict_gate else request.candidates
    prefs = request.variant_preferences
    if request.is_bundle:
        handles = deterministic_bundle_rank(
            scope, request.hard_constraints.bundle_items, request.result_count, prefs
        )
    else:
        handles = deterministic_rank(scope, request.result_count, prefs)

    logger.info("Using deterministic fallback: scope={} returned={} reason={}", len(scope), len(handles), reason)
    return RankingOutcome(
        selected_handles=handles,
        reasoning=FALLBACK_REASONING,
        trust_fallback=True,
        source="fallback",
        parse_fail_reason=reason,
        attempts=attempts,
    )


def _finalize(
    request: RankingRequest,
    state: AttemptState,
    success: _AttemptSuccess,
) -> RankingOutcome:
    handles = [item.handle for item in success.items]
    if not request.is_bundle:
        handles = ensure_result_diversity(handles, state.candidates, request.result_count)
    handles = handles[:request.result_count]
    diversity = measure_result_diversity(handles, state.candidates)
    logger.debug(
        "Result diversity: vendor={:.2f} type={:.2f} price={:.2f} overall={:.2f}",
        diversity["vendor_diversity"],
        diversity["type_diversity"],
        diversity["price_diversity"],
        diversity["overall_score"],
    )

    return RankingOutcome(
        selected_handles=handles,
        reasoning=success.reasoning or "AI-ranked products based on shopper intent",
        trust_fallback=success.trust_fallback,
        source="provider",
        parse_fail_reason=state.last_failure.describe() if state.last_failure else None,
        attempts=state.attempt + 1,
        budget_exceeded=success.budget_exceeded,
    )


# ---------------------------------------------------------------------------
# One attempt
# ---------------------------------------------------------------------------

async def _call_provider(client: ProviderClient, payload: Dict[str, Any], timeout_s: float):
    try:
        return await asyncio.wait_for(client.call(payload, timeout_s), timeout=timeout_s)
    except asyncio.TimeoutError:
        return ProviderFailure(kind=FailureKind.TIMEOUT, detail=f"no response within {timeout_s:.1f}s")
    except Exception as e:
        logger.opt(exception=e).warning("Provider client raised {}", type(e).__name__)
        return ProviderFailure(kind=FailureKind.TRANSPORT_ERROR, detail=f"client raised {type(e).__name__}")


async def _run_attempt(
    request: RankingRequest,
    client: ProviderClient,
    state: AttemptState,
    payload: Dict[str, Any],
    size: int,
) -> Union[_AttemptSuccess, AttemptFailure]:
    start = time.perf_counter()

    def _fail(kind: FailureKind, detail: str, status_code: Optional[int] = None, empty: bool = False) -> AttemptFailure:
        return AttemptFailure(
            kind=kind,
            detail=detail,
            attempt=state.attempt,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
            payload_chars=size,
            candidate_count=len(state.candidates),
            status_code=status_code,
            structurally_empty=empty,
        )

    reply = await _call_provider(client, payload, state.timeout_s)
    if isinstance(reply, ProviderFailure):
        return _fail(reply.kind, reply.detail, reply.status_code, reply.structurally_empty)

    parsed = parse_provider_json(reply.text)
    if isinstance(parsed, ParsedMalformed):
        return _fail(FailureKind.EMPTY_OR_UNPARSEABLE, parsed.reason)

    index = HandleIndex(state.candidates)
    structured = validate_structure(parsed.data, request, index)
    if isinstance(structured, ValidationFailure):
        return _fail(structured.kind, structured.detail)

    verified = verify_constraints(structured, request, index)
    if isinstance(verified, ValidationFailure):
        return _fail(verified.kind, verified.detail)

    if not request.is_bundle:
        return _AttemptSuccess(items=verified.items, trust_fallback=verified.trust_fallback, reasoning=verified.reasoning)

    hc = request.hard_constraints
    try:
        allocation = resolve_bundle(
            verified.items,
            state.candidates,
            hc.bundle_items,
            verified.trust_fallback,
            request.result_count,
            hc.total_budget,
        )
    except BundleResolutionError as e:
        return _fail(FailureKind.SCHEMA_VIOLATION, f"bundle: {e}")
    if not allocation.items:
        return _fail(FailureKind.SCHEMA_VIOLATION, "bundle: no pick could be placed in a slot")

    return _AttemptSuccess(
        items=allocation.items,
        trust_fallback=verified.trust_fallback,
        reasoning=verified.reasoning,
        budget_exceeded=allocation.budget_exceeded,
    )


# ---------------------------------------------------------------------------
# Main entry
# ---------------------------------------------------------------------------

async def rank_products(
    request: RankingRequest,
    client: Optional[ProviderClient],
    config: EngineConfig,
    cache: Optional[CacheGateway] = None,
) -> RankingOutcome:
    """
    Rank ``request.candidates`` against the shopper intent.

    Never raises for provider, parse or validation problems; cancellation
    of the calling task propagates and cancels the in-flight provider call.
    """
    if not request.candidates:
        return fallback_outcome(request, "no_candidates")
    if request.result_count == 0:
        return fallback_outcome(request, "no_results_requested")
    if client is None or not config.ai_enabled:
        return fallback_outcome(request, "provider_disabled")

    cache_key = None
    if cache is not None:
        cache_key = generate_cache_key(request)
        cached = await read_cache(cache, cache_key, config.cache_read_timeout_s)
        if cached is not None:
            logger.info("Ranking cache hit")
            return cached

    state = AttemptState(
        attempt=0,
        phase=AttemptPhase.FRESH,
        timeout_s=0.0,
        compression=CompressionLevel.FULL,
        candidates=tuple(request.candidates[:config.max_candidates_in_prompt]),
    )
    logger.info(
        "AI ranking start: model={} candidates={} result_count={} bundle={}",
        config.model,
        len(state.candidates),
        request.result_count,
        request.is_bundle,
    )

    while True:
        payload, size, state = _prepare(request, state, config)
        logger.info(
            "Attempt {} ({}): compression={} candidates={} payload_chars={} timeout={:.1f}s",
            state.attempt + 1,
            state.phase.value,
            state.compression.name,
            len(state.candidates),
            size,
            state.timeout_s,
        )

        result = await _run_attempt(request, client, state, payload, size)
        if isinstance(result, _AttemptSuccess):
            outcome = _finalize(request, state, result)
            logger.info(
                "AI ranking succeeded on attempt {}: returned={} trust_fallback={}",
                outcome.attempts,
                len(outcome.selected_handles),
                outcome.trust_fallback,
            )
            if cache is not None and cache_key is not None:
                schedule_cache_write(cache, cache_key, outcome, config.cache_ttl_s)
            return outcome

        logger.warning(
            "Attempt {} failed: kind={} detail={} elapsed_ms={:.0f} payload_chars={} candidates={}",
            result.attempt + 1,
            result.kind.value,
            result.detail,
            result.elapsed_ms,
            result.payload_chars,
            result.candidate_count,
        )
        state = escalate(state, result, request, config)
        if state.phase == AttemptPhase.EXHAUSTED:
            return fallback_outcome(request, result.describe(), attempts=state.attempt + 1)
