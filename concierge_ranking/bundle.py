from __future__ import annotations

"""
Multi-slot ("bundle") resolution of a provider selection.

A bundle request ranks several independent slots at once (e.g. a suit, a
shirt and a pair of shoes). The provider returns one flat
``selected_by_item`` list; this module maps each pick back onto the slot
whose pool actually holds the handle, applies per-slot quotas so every slot
gets a representative before any slot gets a second, and checks the
aggregate price against the bundle budget.

Over-budget results are flagged, never rejected: no result is worse than an
over-budget result with alternatives.
"""

from typing import Dict, List, Optional, Sequence, Set

from loguru import logger

from .config import BundleItem, ProductCandidate, SelectedItem
from .fallback import allocate_slots, interleave_slots
from .pipeline_types import BundleAllocation


class BundleResolutionError(ValueError):
    """A provider pick could not be placed in exactly one slot."""


def allocate_budget_per_item(n_slots: int, total_budget: float) -> List[float]:
    """
    Split a bundle budget across slots: 100% for one slot, 70/30 for two,
    otherwise 60% for the first and the remaining 40% split evenly.
    """
    if n_slots <= 0:
        return []
    if n_slots == 1:
        return [total_budget]
    if n_slots == 2:
        return [total_budget * 0.7, total_budget * 0.3]
    rest = 0.4 / (n_slots - 1)
    return [total_budget * 0.6] + [total_budget * rest for _ in range(n_slots - 1)]


def slot_budgets(bundle_items: Sequence[BundleItem], total_budget: Optional[float]) -> Optional[List[float]]:
    """Per-slot budgets: explicit ones when every slot has one, else a split of the total."""
    if bundle_items and all(item.budget_max is not None for item in bundle_items):
        return [float(item.budget_max) for item in bundle_items]
    if total_budget is not None:
        return allocate_budget_per_item(len(bundle_items), total_budget)
    return None


def build_slot_map(candidates: Sequence[ProductCandidate], n_slots: int) -> Dict[int, Set[str]]:
    slots: Dict[int, Set[str]] = {i: set() for i in range(n_slots)}
    for c in candidates:
        if c.item_index is not None and c.item_index in slots:
            slots[c.item_index].add(c.handle)
    return slots


def _place(item: SelectedItem, slot_map: Dict[int, Set[str]], trust_fallback: bool) -> Optional[SelectedItem]:
    declared = item.item_index
    if declared in slot_map and item.handle in slot_map[declared]:
        return item

    owners = [slot for slot, handles in slot_map.items() if item.handle in handles]
    if len(owners) == 1:
        logger.debug("Bundle pick remapped from slot {} to slot {}", declared, owners[0])
        return item.model_copy(update={"item_index": owners[0]})

    problem = "no slot" if not owners else f"{len(owners)} slots"
    if trust_fallback:
        logger.info("Bundle pick dropped: handle belongs to {} (declared slot {})", problem, declared)
        return None
    raise BundleResolutionError(f"handle belongs to {problem} (declared slot {declared})")


def resolve_bundle(
    items: Sequence[SelectedItem],
    candidates: Sequence[ProductCandidate],
    bundle_items: Sequence[BundleItem],
    trust_fallback: bool,
    result_count: int,
    total_budget: Optional[float] = None,
) -> BundleAllocation:
    """
    Place provider picks into slots and order them one-per-slot first.

    Raises BundleResolutionError when a pick cannot be placed and
    ``trust_fallback`` is False.
    """
    n_slots = len(bundle_items)
    slot_map = build_slot_map(candidates, n_slots)

    placed: List[SelectedItem] = []
    seen = set()
    for item in items:
        if item.handle in seen:
            continue
        resolved = _place(item, slot_map, trust_fallback)
        if resolved is None:
            continue
        seen.add(resolved.handle)
        placed.append(resolved)

    per_slot: List[List[str]] = [[] for _ in range(n_slots)]
    by_handle: Dict[str, SelectedItem] = {}
    for item in placed:
        per_slot[item.item_index].append(item.handle)
        by_handle[item.handle] = item

    missing = [slot for slot in range(n_slots) if not per_slot[slot]]
    if missing:
        logger.warning("Bundle selection has no pick for slot(s) {}", missing)

    quotas = allocate_slots(n_slots, result_count)
    ordered = interleave_slots(per_slot, quotas, result_count)
    final_items = [by_handle[h] for h in ordered]

    # The bundle as bought: first pick of each slot times its quantity.
    prices = {c.handle: c.price for c in candidates}
    total_price = 0.0
    priced_slots = set()
    for item in final_items:
        if item.item_index in priced_slots:
            continue
        priced_slots.add(item.item_index)
        price = prices.get(item.handle)
        if price is not None:
            total_price += price * bundle_items[item.item_index].quantity

    budgets = slot_budgets(bundle_items, total_budget)
    budget_total = sum(budgets) if budgets is not None else None
    exceeded = budget_total is not None and total_price > budget_total
    if exceeded:
        logger.warning("Bundle over budget: total={:.2f} budget={:.2f}", total_price, budget_total)

    return BundleAllocation(
        items=final_items,
        missing_slots=missing,
        total_price=total_price,
        budget_total=budget_total,
        budget_exceeded=exceeded,
    )
