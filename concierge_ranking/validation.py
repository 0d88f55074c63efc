"""Structural validation and business-rule re-verification of provider picks."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from .config import Evidence, ProductCandidate, RankingRequest, SelectedItem
from .matching import contains_any, matched_facets, matching_fields, term_in_text, field_texts
from .normalize import normalize_for_match
from .pipeline_types import FailureKind, StructuredResult, ValidationFailure

Validated = Union[StructuredResult, ValidationFailure]


class _SingleSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    trust_fallback: StrictBool = Field(alias="trustFallback")
    selected: List[Any]
    reasoning: Optional[str] = None


class _BundleSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    trust_fallback: StrictBool = Field(alias="trustFallback")
    selected_by_item: List[Any]
    reasoning: Optional[str] = None


class HandleIndex:
    """Candidate lookup with case-insensitive recovery of provider handles."""

    def __init__(self, candidates: Sequence[ProductCandidate]):
        self.by_handle: Dict[str, ProductCandidate] = {c.handle: c for c in candidates}
        self._lower: Dict[str, str] = {}
        for c in candidates:
            self._lower.setdefault(c.handle.lower(), c.handle)

    def resolve(self, handle: Any) -> Optional[str]:
        if not isinstance(handle, str):
            return None
        h = handle.strip()
        if h in self.by_handle:
            return h
        return self._lower.get(h.lower())

    def __getitem__(self, handle: str) -> ProductCandidate:
        return self.by_handle[handle]


def hard_terms_for(request: RankingRequest, candidate: ProductCandidate) -> List[str]:
    """Slot hard terms for bundle candidates, request hard terms otherwise."""
    if request.is_bundle and candidate.item_index is not None:
        slot_terms = request.hard_constraints.bundle_items[candidate.item_index].hard_terms
        slot_terms = [t for t in slot_terms if t and t.strip()]
        if slot_terms:
            return slot_terms
    return request.hard_terms


def _first_error(err: ValidationError) -> str:
    first = err.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ())) or "<root>"
    return f"{loc}: {first.get('msg', 'invalid')}"


def _count(dropped: Dict[str, int], rule: str) -> None:
    dropped[rule] = dropped.get(rule, 0) + 1


# ---------------------------------------------------------------------------
# Legacy shape
# ---------------------------------------------------------------------------

def _legacy_handles(data: Any) -> Optional[Tuple[List[Any], Optional[str]]]:
    if isinstance(data, list):
        return data, None
    if isinstance(data, dict) and isinstance(data.get("ranked_handles"), list):
        reasoning = data.get("reasoning")
        return data["ranked_handles"], reasoning if isinstance(reasoning, str) else None
    return None


def parse_legacy(data: Any, request: RankingRequest, index: HandleIndex) -> Optional[StructuredResult]:
    """
    Older providers returned a flat ranked handle list with no evidence.
    Evidence is recomputed here from the candidates' own text.
    """
    legacy = _legacy_handles(data)
    if legacy is None:
        return None
    raw_handles, reasoning = legacy

    items: List[SelectedItem] = []
    seen = set()
    for raw in raw_handles:
        handle = index.resolve(raw)
        if handle is None or handle in seen:
            continue
        seen.add(handle)
        c = index[handle]
        terms = hard_terms_for(request, c)
        matched = [t for t in terms if any(term_in_text(t, txt) for txt in field_texts(c).values())]
        fields = sorted({f for t in matched for f in matching_fields(t, c)})
        items.append(
            SelectedItem(
                handle=handle,
                label="exact" if matched or not terms else "alternative",
                score=max(0.0, 100.0 - len(items)),
                evidence=Evidence(matched_hard_terms=matched, fields_used=fields),
                reason="",
                item_index=c.item_index,
            )
        )
    if not items:
        return None
    logger.info("Provider reply accepted via legacy ranked-handles shape ({} items)", len(items))
    return StructuredResult(trust_fallback=False, items=items, reasoning=reasoning, legacy=True)


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------

def validate_structure(data: Any, request: RankingRequest, index: HandleIndex) -> Validated:
    """
    Check the provider JSON against the response schema.

    Items that break a rule are dropped (and counted per rule); the attempt
    fails only when the top level is wrong and the legacy shape does not
    apply either, or when no item survives.
    """
    shape = _BundleSelection if request.is_bundle else _SingleSelection
    try:
        top = shape.model_validate(data)
    except ValidationError as e:
        legacy = parse_legacy(data, request, index)
        if legacy is not None:
            return legacy
        return ValidationFailure(FailureKind.SCHEMA_VIOLATION, _first_error(e))

    raw_items = top.selected_by_item if request.is_bundle else top.selected
    dropped: Dict[str, int] = {}
    items: List[SelectedItem] = []
    seen = set()
    for raw in raw_items:
        try:
            item = SelectedItem.model_validate(raw)
        except ValidationError as e:
            _count(dropped, _first_error(e).split(":")[0])
            continue

        handle = index.resolve(item.handle)
        if handle is None:
            _count(dropped, "unknown_handle")
            continue
        if handle in seen:
            _count(dropped, "duplicate_handle")
            continue

        if not top.trust_fallback and hard_terms_for(request, index[handle]) and not item.evidence.matched_hard_terms:
            _count(dropped, "empty_matched_hard_terms")
            continue

        seen.add(handle)
        items.append(item if handle == item.handle else item.model_copy(update={"handle": handle}))

    if dropped:
        logger.info("Schema validation dropped items: {}", dropped)
    if not items:
        detail = "no valid selected items" if raw_items else "selected list is empty"
        if dropped:
            detail += f" (dropped: {dropped})"
        return ValidationFailure(FailureKind.SCHEMA_VIOLATION, detail)

    return StructuredResult(trust_fallback=top.trust_fallback, items=items, reasoning=top.reasoning, dropped=dropped)


# ---------------------------------------------------------------------------
# Business-rule re-verification
# ---------------------------------------------------------------------------

def _term_requested(declared: str, requested: Sequence[str]) -> bool:
    d = normalize_for_match(declared)
    if not d:
        return False
    for r in requested:
        rr = normalize_for_match(r)
        if rr and (d == rr or d in rr or rr in d):
            return True
    return False


def verify_hard_terms(
    declared: Sequence[str],
    requested: Sequence[str],
    candidate: ProductCandidate,
) -> Tuple[List[str], List[str]]:
    """Declared terms that are really requested and really in the candidate's text, plus the fields hit."""
    verified: List[str] = []
    fields: set = set()
    for term in declared:
        if not isinstance(term, str) or not _term_requested(term, requested):
            continue
        hit = matching_fields(term, candidate)
        if hit and term not in verified:
            verified.append(term)
            fields.update(hit)
    return verified, sorted(fields)


def verify_constraints(result: StructuredResult, request: RankingRequest, index: HandleIndex) -> Validated:
    """
    Re-check every pick against the candidate's own data, independent of
    what the provider's evidence claims.

    Avoid terms always disqualify. Hard terms and required facets are
    enforced unless the provider declared trustFallback and the request
    permits alternatives; in that case failing picks are relabeled
    "alternative". If enforcement would leave nothing although the
    provider did pick avoid-clean items, those are surfaced as
    alternatives with trustFallback=True.
    """
    hc = request.hard_constraints
    required_facets = hc.hard_facets.required() if hc is not None else {}
    avoid = request.all_avoid_terms
    alternatives_ok = result.trust_fallback and request.allows_alternatives

    dropped: Dict[str, int] = {}
    kept: List[SelectedItem] = []
    avoid_clean: List[SelectedItem] = []

    for item in result.items:
        c = index[item.handle]
        if avoid and contains_any(c, avoid) is not None:
            _count(dropped, "avoid_term")
            continue
        avoid_clean.append(item)

        terms = hard_terms_for(request, c)
        verified, fields = verify_hard_terms(item.evidence.matched_hard_terms, terms, c)
        facets = matched_facets(c, required_facets)
        terms_ok = not terms or bool(verified)
        facets_ok = all(facets[f] for f in required_facets)

        evidence = Evidence(
            matched_hard_terms=verified,
            matched_facets=facets,
            fields_used=fields or list(item.evidence.fields_used),
        )
        if terms_ok and facets_ok:
            kept.append(item.model_copy(update={"evidence": evidence}))
        elif alternatives_ok:
            kept.append(item.model_copy(update={"evidence": evidence, "label": "alternative"}))
        else:
            _count(dropped, "hard_terms" if not terms_ok else "hard_facets")

    if dropped:
        logger.info("Constraint re-verification dropped items: {}", dropped)

    if kept:
        return StructuredResult(
            trust_fallback=alternatives_ok,
            items=kept,
            reasoning=result.reasoning,
            legacy=result.legacy,
            dropped=dropped,
        )

    if avoid_clean:
        logger.warning(
            "Re-verification rejected all {} picks; surfacing them as alternatives",
            len(avoid_clean),
        )
        relabeled = [i.model_copy(update={"label": "alternative"}) for i in avoid_clean]
        return StructuredResult(
            trust_fallback=True,
            items=relabeled,
            reasoning=result.reasoning,
            legacy=result.legacy,
            dropped=dropped,
        )

    return ValidationFailure(
        FailureKind.CONSTRAINT_VIOLATION,
        f"all {len(result.items)} picks failed re-verification ({dropped})",
    )
