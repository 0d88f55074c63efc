"""Provider payload assembly.

Turns a RankingRequest plus the candidate subset chosen for an attempt into
an OpenAI-compatible chat completions body. Three serialisation levels exist
(see CompressionLevel); the orchestrator picks one based on payload size,
candidate count and bundle mode. Everything here is pure.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Sequence

from .config import (
    COMPACT_DESCRIPTION_CHARS,
    MAX_DESCRIPTION_CHARS,
    EngineConfig,
    ProductCandidate,
    RankingRequest,
)
from .normalize import basic_clean, clean_description, enhance_user_intent
from .pipeline_types import CompressionLevel

SYSTEM_PROMPT = """You are an expert product recommendation assistant for an e-commerce store. \
Match the shopper's intent with the most relevant products from the candidate list.

CRITICAL RULES:
- Return ONLY valid JSON matching the output schema.
- Use the EXACT handle values from the candidate list (case-sensitive, unmodified).
- Only use the provided sizes/colors/materials/optionValues; never guess variant availability.
- Products containing any avoid term must not be selected.
- When hard terms are given and trustFallback is false, every selected product must contain at
  least one hard term in its title, type, tags or description, and evidence.matchedHardTerms must
  list the terms it contains.
- If no product satisfies the hard terms and alternatives are allowed, set trustFallback to true
  and label the closest matches "alternative".
- It is better to return fewer genuine matches than to pad with products that do not fit.
- Do not include personal information in reasons."""

SINGLE_SCHEMA = """{
  "trustFallback": boolean,
  "selected": [
    {"handle": string, "label": "exact" | "alternative", "score": number (0-100),
     "evidence": {"matchedHardTerms": [string],
                  "matchedFacets": {"size": [string], "color": [string], "material": [string]},
                  "fieldsUsed": [string]},
     "reason": string}
  ],
  "reasoning": string
}"""

BUNDLE_SCHEMA = """{
  "trustFallback": boolean,
  "selected_by_item": [
    {"itemIndex": integer, "handle": string, "label": "exact" | "alternative", "score": number (0-100),
     "evidence": {"matchedHardTerms": [string],
                  "matchedFacets": {"size": [string], "color": [string], "material": [string]},
                  "fieldsUsed": [string]},
     "reason": string}
  ],
  "reasoning": string
}"""


# ---------------------------------------------------------------------------
# Candidate serialisation
# ---------------------------------------------------------------------------

def _join(values: Sequence[str]) -> str:
    return ", ".join(v for v in values if v) or "none"


def _price_text(c: ProductCandidate) -> str:
    return f"{c.price:.2f}" if c.price is not None else "unknown"


def _full_line(idx: int, c: ProductCandidate) -> str:
    desc = clean_description(c.description, MAX_DESCRIPTION_CHARS) or "No description available"
    lines = [
        f"{idx}. Handle: {c.handle}",
        f"   Title: {basic_clean(c.title)}",
        f"   Tags: {_join(c.tags)}",
        f"   Type: {c.product_type or 'unknown'}",
        f"   Vendor: {c.vendor or 'unknown'}",
        f"   Price: {_price_text(c)}",
        f"   Description: {desc}",
        f"   Available: {'yes' if c.available else 'no'}",
        f"   Sizes: {_join(c.sizes)}",
        f"   Colors: {_join(c.colors)}",
        f"   Materials: {_join(c.materials)}",
        f"   OptionValues: {json.dumps(c.option_values, sort_keys=True)}",
    ]
    if c.item_index is not None:
        lines.insert(1, f"   Item: {c.item_index}")
    return "\n".join(lines)


def _compact_record(c: ProductCandidate, level: CompressionLevel) -> Dict[str, Any]:
    rec: Dict[str, Any] = {
        "h": c.handle,
        "t": basic_clean(c.title),
        "ty": c.product_type or "",
        "v": c.vendor or "",
        "p": c.price,
        "tg": list(c.tags or [])[:10],
        "a": c.available,
    }
    if c.item_index is not None:
        rec["i"] = c.item_index
    if level == CompressionLevel.COMPACT:
        rec["d"] = clean_description(c.description, COMPACT_DESCRIPTION_CHARS)
        rec["sz"] = list(c.sizes or [])
        rec["c"] = list(c.colors or [])
        rec["m"] = list(c.materials or [])
        if c.option_values:
            rec["o"] = c.option_values
    return rec


def serialize_candidates(candidates: Sequence[ProductCandidate], level: CompressionLevel) -> str:
    if level == CompressionLevel.FULL:
        return "\n\n".join(_full_line(i + 1, c) for i, c in enumerate(candidates))
    header = (
        "Keys: h=handle t=title ty=type v=vendor p=price tg=tags a=available i=itemIndex"
        + (" d=description sz=sizes c=colors m=materials o=optionValues" if level == CompressionLevel.COMPACT else "")
    )
    rows = [json.dumps(_compact_record(c, level), separators=(",", ":"), ensure_ascii=False) for c in candidates]
    return header + "\n" + "\n".join(rows)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def _constraint_lines(request: RankingRequest) -> List[str]:
    lines: List[str] = []
    vc = request.variant_constraints
    if vc is not None and (vc.size or vc.color or vc.material):
        lines.append(
            f"Variant constraints: size={vc.size or 'none'}, color={vc.color or 'none'}, "
            f"material={vc.material or 'none'}"
        )
    if request.variant_preferences:
        lines.append("Variant option preferences (use candidate optionValues only): "
                     + json.dumps(request.variant_preferences, sort_keys=True))
    if request.include_terms:
        lines.append("Include terms (prefer): " + ", ".join(request.include_terms))
    if request.all_avoid_terms:
        lines.append("Avoid terms (exclude): " + ", ".join(request.all_avoid_terms))

    hc = request.hard_constraints
    if hc is not None:
        if request.hard_terms:
            lines.append("Hard terms: " + ", ".join(request.hard_terms))
        facets = hc.hard_facets.required()
        if facets:
            lines.append("Required facets: " + json.dumps(facets, sort_keys=True))
        lines.append(f"Alternatives allowed (trustFallback may be true): {'yes' if hc.trust_fallback else 'no'}")
        if request.is_bundle:
            for idx, item in enumerate(hc.bundle_items):
                budget = f", budget<={item.budget_max:.2f}" if item.budget_max is not None else ""
                lines.append(
                    f"Bundle item {idx}: hard terms={_join(item.hard_terms)}, quantity={item.quantity}{budget}"
                )
            if hc.total_budget is not None:
                lines.append(f"Bundle total budget: {hc.total_budget:.2f}")
    return lines


def build_user_prompt(
    request: RankingRequest,
    candidates: Sequence[ProductCandidate],
    level: CompressionLevel,
) -> str:
    parts = [
        "Shopper Intent:",
        enhance_user_intent(request.user_intent),
        "",
    ]
    constraints = _constraint_lines(request)
    if constraints:
        parts.extend(constraints)
        parts.append("")

    if request.is_bundle:
        parts.append(
            "Pick products for EVERY bundle item; each pick's itemIndex must be the Item of its candidate. "
            "Give every item one pick before giving any item a second."
        )
    parts.append(f"Candidate Products ({len(candidates)} total):")
    parts.append(serialize_candidates(candidates, level))
    parts.append("")
    parts.append(f"Return up to {request.result_count} products as JSON in this schema:")
    parts.append(BUNDLE_SCHEMA if request.is_bundle else SINGLE_SCHEMA)
    return "\n".join(parts)


def build_payload(
    request: RankingRequest,
    candidates: Sequence[ProductCandidate],
    level: CompressionLevel,
    config: EngineConfig,
) -> Dict[str, Any]:
    """Chat completions body for one attempt."""
    return {
        "model": config.model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(request, candidates, level)},
        ],
        "response_format": {"type": "json_object"},
        "temperature": config.temperature,
        "max_tokens": config.bundle_max_tokens if request.is_bundle else config.max_tokens,
    }


def payload_size(payload: Dict[str, Any]) -> int:
    return len(json.dumps(payload, ensure_ascii=False))


def should_compress(request: RankingRequest, n_candidates: int, size: int, config: EngineConfig) -> bool:
    return (
        size > config.compress_payload_chars
        or n_candidates > config.compress_candidate_count
        or request.is_bundle
    )
