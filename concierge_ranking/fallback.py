# concierge_ranking/fallback.py
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config import BundleItem, ProductCandidate
from .matching import option_values_for, value_matches

FALLBACK_REASONING = (
    "AI ranking unavailable; selected products based on availability, "
    "preferences, and product information quality."
)

AVAILABLE_POINTS = 10
PREFERENCE_POINTS = 6
MANY_PREFERENCES_BONUS = 2
MANY_PREFERENCES_MIN = 3


def preference_score(candidate: ProductCandidate, preferences: Mapping[str, str]) -> int:
    """
    +10 when in stock, +6 per variant preference the candidate's option
    values satisfy, +2 once at least three preferences match.
    """
    score = AVAILABLE_POINTS if candidate.available else 0

    matched = 0
    for option_name, desired in preferences.items():
        if not desired:
            continue
        values = option_values_for(candidate, option_name)
        if values and value_matches(values, desired):
            matched += 1
            score += PREFERENCE_POINTS
    if matched >= MANY_PREFERENCES_MIN:
        score += MANY_PREFERENCES_BONUS
    return score


def _sort_key(
    candidate: ProductCandidate,
    preferences: Mapping[str, str],
) -> Tuple[int, int, int, int, str]:
    # sort by: available desc, preference desc, tag count desc,
    # has description desc, handle asc
    pref = preference_score(candidate, preferences) if preferences else 0
    has_desc = bool(candidate.description and candidate.description.strip())
    return (
        0 if candidate.available else 1,
        -pref,
        -len(candidate.tags or []),
        0 if has_desc else 1,
        candidate.handle,
    )


def deterministic_rank(
    candidates: Sequence[ProductCandidate],
    result_count: int,
    preferences: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """
    Pure, total-order ranking used whenever the provider path fails.
    Identical inputs always give identical output.
    """
    if result_count <= 0 or not candidates:
        return []
    prefs = dict(preferences or {})
    ranked = sorted(candidates, key=lambda c: _sort_key(c, prefs))
    return [c.handle for c in ranked[:result_count]]


# ---------------------------------------------------------------------------
# Bundle mode
# ---------------------------------------------------------------------------

def allocate_slots(n_slots: int, result_count: int) -> List[int]:
    """
    Spread ``result_count`` result positions across ``n_slots`` bundle slots:
    one each first (while positions last), then round-robin in slot order.
    """
    if n_slots <= 0 or result_count <= 0:
        return [0] * max(n_slots, 0)
    quotas = [0] * n_slots
    for i in range(result_count):
        quotas[i % n_slots] += 1
    return quotas


def interleave_slots(per_slot: Sequence[Sequence[str]], quotas: Sequence[int], result_count: int) -> List[str]:
    """
    Round-robin merge: every slot contributes its first pick before any slot
    contributes a second. Quotas bound each slot; leftover room is then
    filled from the remaining picks, still round-robin.
    """
    out: List[str] = []
    seen = set()

    def _merge(limits: Sequence[int]) -> None:
        cursors = [0] * len(per_slot)
        taken = [0] * len(per_slot)
        progressed = True
        while progressed and len(out) < result_count:
            progressed = False
            for slot, picks in enumerate(per_slot):
                if len(out) >= result_count:
                    break
                while cursors[slot] < len(picks) and picks[cursors[slot]] in seen:
                    cursors[slot] += 1
                if cursors[slot] >= len(picks) or taken[slot] >= limits[slot]:
                    continue
                handle = picks[cursors[slot]]
                out.append(handle)
                seen.add(handle)
                cursors[slot] += 1
                taken[slot] += 1
                progressed = True

    _merge(quotas)
    if len(out) < result_count:
        _merge([result_count] * len(per_slot))
    return out


def deterministic_bundle_rank(
    candidates: Sequence[ProductCandidate],
    bundle_items: Sequence[BundleItem],
    result_count: int,
    preferences: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Fallback for bundle requests: rank each slot pool, then interleave."""
    n_slots = len(bundle_items)
    pools: Dict[int, List[ProductCandidate]] = {i: [] for i in range(n_slots)}
    for c in candidates:
        if c.item_index is not None and c.item_index in pools:
            pools[c.item_index].append(c)
    if not any(pools.values()):
        # untagged pool: nothing to split on
        return deterministic_rank(candidates, result_count, preferences)

    per_slot = [deterministic_rank(pools[i], result_count, preferences) for i in range(n_slots)]
    quotas = allocate_slots(n_slots, result_count)
    return interleave_slots(per_slot, quotas, result_count)
