import pytest

from concierge_ranking.bundle import (
    BundleResolutionError,
    allocate_budget_per_item,
    resolve_bundle,
    slot_budgets,
)
from concierge_ranking.config import BundleItem, ProductCandidate, SelectedItem


SLOTS = [BundleItem(hard_terms=["suit"]), BundleItem(hard_terms=["shirt"])]


def _pool():
    return [
        ProductCandidate(handle="suit-1", title="Navy Suit", price=300, item_index=0),
        ProductCandidate(handle="suit-2", title="Grey Suit", price=250, item_index=0),
        ProductCandidate(handle="shirt-1", title="White Shirt", price=50, item_index=1),
        ProductCandidate(handle="loose", title="Untagged Tie", price=20),
    ]


def _item(handle, item_index=None):
    return SelectedItem.model_validate(
        {
            "handle": handle,
            "label": "exact",
            "score": 90,
            "evidence": {"matchedHardTerms": []},
            "reason": "",
            "itemIndex": item_index,
        }
    )


def test_allocate_budget_per_item():
    assert allocate_budget_per_item(1, 100) == [100]
    assert allocate_budget_per_item(2, 100) == pytest.approx([70, 30])
    assert allocate_budget_per_item(3, 100) == pytest.approx([60, 20, 20])
    assert allocate_budget_per_item(0, 100) == []


def test_slot_budgets_prefers_explicit_budgets():
    items = [BundleItem(budget_max=100), BundleItem(budget_max=40)]
    assert slot_budgets(items, 1000) == [100.0, 40.0]
    assert slot_budgets(SLOTS, None) is None


def test_pick_in_wrong_slot_is_remapped():
    alloc = resolve_bundle([_item("shirt-1", 0), _item("suit-1", 0)], _pool(), SLOTS, False, 2)
    by_handle = {i.handle: i.item_index for i in alloc.items}
    assert by_handle == {"shirt-1": 1, "suit-1": 0}
    assert alloc.missing_slots == []


def test_unplaceable_pick_raises_or_drops():
    with pytest.raises(BundleResolutionError):
        resolve_bundle([_item("loose", 0)], _pool(), SLOTS, False, 2)

    alloc = resolve_bundle([_item("loose", 0), _item("suit-1", 0)], _pool(), SLOTS, True, 2)
    assert [i.handle for i in alloc.items] == ["suit-1"]
    assert alloc.missing_slots == [1]


def test_every_slot_represented_before_seconds():
    picks = [_item("suit-1", 0), _item("suit-2", 0), _item("shirt-1", 1)]
    alloc = resolve_bundle(picks, _pool(), SLOTS, False, 3)
    assert [i.handle for i in alloc.items] == ["suit-1", "shirt-1", "suit-2"]


def test_result_count_bounds_bundle():
    picks = [_item("suit-1", 0), _item("suit-2", 0), _item("shirt-1", 1)]
    alloc = resolve_bundle(picks, _pool(), SLOTS, False, 2)
    assert [i.handle for i in alloc.items] == ["suit-1", "shirt-1"]


def test_over_budget_is_flagged_not_rejected():
    picks = [_item("suit-1", 0), _item("shirt-1", 1)]
    alloc = resolve_bundle(picks, _pool(), SLOTS, False, 2, total_budget=300)
    assert alloc.total_price == 350
    assert alloc.budget_total == pytest.approx(300)
    assert alloc.budget_exceeded
    assert len(alloc.items) == 2


def test_quantity_multiplies_slot_price():
    slots = [BundleItem(hard_terms=["suit"]), BundleItem(hard_terms=["shirt"], quantity=3)]
    picks = [_item("suit-2", 0), _item("shirt-1", 1)]
    alloc = resolve_bundle(picks, _pool(), slots, False, 2, total_budget=500)
    assert alloc.total_price == 400
    assert not alloc.budget_exceeded
