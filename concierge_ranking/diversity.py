from __future__ import annotations

"""
Post-hoc diversity pass over an already-ranked handle list.

Relevance keeps priority for the head of the list; the tail is nudged
towards variety in vendor and product type. Completeness wins over
diversity: if the caps would leave the list short, the remaining slots
are filled in original order regardless.
"""

from math import ceil
from typing import Dict, List, Sequence

from loguru import logger

from .config import ProductCandidate

ALWAYS_ADMIT_HEAD = 3
RELEVANCE_SHARE = 0.7
SMALL_RESULT_MAX = 8
DIVERSE_BELOW = 2

UNKNOWN = "unknown"


def vendor_cap(max_results: int) -> int:
    return 2 if max_results <= SMALL_RESULT_MAX else ceil(max_results / 3)


def type_cap(max_results: int) -> int:
    return 3 if max_results <= SMALL_RESULT_MAX else ceil(max_results / 2)


def _vendor(c: ProductCandidate) -> str:
    return (c.vendor or "").strip().lower() or UNKNOWN


def _ptype(c: ProductCandidate) -> str:
    return (c.product_type or "").strip().lower() or UNKNOWN


def ensure_result_diversity(
    ranked_handles: Sequence[str],
    candidates: Sequence[ProductCandidate],
    max_results: int,
) -> List[str]:
    """
    Three passes over ``ranked_handles``:

    1. original order; the first three are always admitted, after that the
       vendor cap binds and the type cap is lifted while fewer than 70% of
       ``max_results`` are filled
    2. fill from original order, requiring the vendor to be under its cap
       and either vendor or type to still be under two
    3. anything unused, original order, caps ignored

    Handles unknown to ``candidates`` are dropped.
    """
    if max_results <= 0 or not ranked_handles or not candidates:
        return []

    by_handle: Dict[str, ProductCandidate] = {c.handle: c for c in candidates}
    ordered: List[ProductCandidate] = []
    seen = set()
    for h in ranked_handles:
        c = by_handle.get(h)
        if c is None or h in seen:
            continue
        seen.add(h)
        ordered.append(c)

    max_vendor = vendor_cap(max_results)
    max_type = type_cap(max_results)

    diverse: List[str] = []
    used = set()
    vendor_count: Dict[str, int] = {}
    type_count: Dict[str, int] = {}

    def _admit(c: ProductCandidate) -> None:
        diverse.append(c.handle)
        used.add(c.handle)
        v, t = _vendor(c), _ptype(c)
        vendor_count[v] = vendor_count.get(v, 0) + 1
        type_count[t] = type_count.get(t, 0) + 1

    # Pass 1: relevance first
    for c in ordered:
        if len(diverse) >= max_results:
            break
        v_now = vendor_count.get(_vendor(c), 0)
        t_now = type_count.get(_ptype(c), 0)
        head = len(diverse) < ALWAYS_ADMIT_HEAD
        relevance_window = len(diverse) < max_results * RELEVANCE_SHARE
        if head or (v_now < max_vendor and (t_now < max_type or relevance_window)):
            _admit(c)

    # Pass 2: fill with items that still add variety
    if len(diverse) < max_results:
        for c in ordered:
            if len(diverse) >= max_results:
                break
            if c.handle in used:
                continue
            v_now = vendor_count.get(_vendor(c), 0)
            t_now = type_count.get(_ptype(c), 0)
            if v_now < max_vendor and (v_now < DIVERSE_BELOW or t_now < DIVERSE_BELOW):
                _admit(c)

    # Pass 3: completeness over diversity
    if len(diverse) < max_results:
        for c in ordered:
            if len(diverse) >= max_results:
                break
            if c.handle not in used:
                _admit(c)

    if diverse != [c.handle for c in ordered[:max_results]]:
        logger.debug("Diversity pass reordered results: kept={} from={}", len(diverse), len(ordered))
    return diverse


def measure_result_diversity(
    handles: Sequence[str],
    candidates: Sequence[ProductCandidate],
) -> Dict[str, float]:
    """
    Vendor / type / price diversity ratios in [0, 1] plus their mean.
    Prices are bucketed to the nearest 10.
    """
    if not handles:
        return {"vendor_diversity": 0.0, "type_diversity": 0.0, "price_diversity": 0.0, "overall_score": 0.0}

    by_handle = {c.handle: c for c in candidates}
    vendors, types, prices = set(), set(), set()
    for h in handles:
        c = by_handle.get(h)
        if c is None:
            continue
        if c.vendor:
            vendors.add(c.vendor)
        if c.product_type:
            types.add(c.product_type)
        if c.price is not None:
            prices.add(round(c.price / 10) * 10)

    n = len(handles)
    vendor_div = len(vendors) / n
    type_div = len(types) / n
    price_div = len(prices) / n
    return {
        "vendor_diversity": min(1.0, vendor_div * 2),
        "type_diversity": min(1.0, type_div * 2),
        "price_diversity": min(1.0, price_div * 1.5),
        "overall_score": (vendor_div + type_div + price_div) / 3,
    }
