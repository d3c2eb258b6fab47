import pytest

from ledger import (
    LedgerEntry,
    StageItemLedger,
    LedgerError,
    FrozenLedgerError,
)
from stage_state import OrderStage


def _entry(menu_item_id="A", price=100.0, quantity=1, **extra):
    return LedgerEntry(menu_item_id=menu_item_id, name=f"Item {menu_item_id}",
                       price=price, quantity=quantity, **extra)


@pytest.fixture
def ledger():
    return StageItemLedger("order-1", max_quantity_per_item=10)


def test_add_accumulates_quantity(ledger):
    ledger.add(OrderStage.STARTERS, _entry(quantity=2))
    stored = ledger.add(OrderStage.STARTERS, _entry(quantity=3))

    assert stored.quantity == 5
    assert len(ledger.entries(OrderStage.STARTERS)) == 1
    assert ledger.stage_total(OrderStage.STARTERS) == 500


def test_stages_are_independent(ledger):
    ledger.add(OrderStage.STARTERS, _entry("A"))
    ledger.add(OrderStage.DESSERTS, _entry("A"))

    assert ledger.item_count(OrderStage.STARTERS) == 1
    assert ledger.item_count(OrderStage.DESSERTS) == 1
    assert ledger.is_empty(OrderStage.MAIN_COURSE)
    assert not ledger.is_empty()


def test_entries_keep_insertion_order(ledger):
    for menu_item_id in ("C", "A", "B"):
        ledger.add(OrderStage.MAIN_COURSE, _entry(menu_item_id))

    assert [e.menu_item_id for e in ledger.entries(OrderStage.MAIN_COURSE)] == ["C", "A", "B"]


@pytest.mark.parametrize("entry", [
    _entry(quantity=0),
    _entry(quantity=-2),
    _entry(quantity=1.5),
    _entry(quantity=True),
    _entry(price=-1),
    LedgerEntry(menu_item_id="", name="Nameless", price=1, quantity=1),
])
def test_invalid_entries_rejected(ledger, entry):
    with pytest.raises(LedgerError):
        ledger.add(OrderStage.STARTERS, entry)

    assert ledger.is_empty()


def test_quantity_limit(ledger):
    ledger.add(OrderStage.STARTERS, _entry(quantity=8))

    with pytest.raises(LedgerError):
        ledger.add(OrderStage.STARTERS, _entry(quantity=3))

    assert ledger.get(OrderStage.STARTERS, "A").quantity == 8


def test_remove_absent_is_noop(ledger):
    ledger.add(OrderStage.STARTERS, _entry("A"))

    assert ledger.remove(OrderStage.STARTERS, "B") is False
    assert ledger.remove(OrderStage.STARTERS, "A") is True
    assert ledger.is_empty()


def test_set_quantity(ledger):
    ledger.add(OrderStage.STARTERS, _entry("A"))

    assert ledger.set_quantity(OrderStage.STARTERS, "A", 4) is True
    assert ledger.get(OrderStage.STARTERS, "A").quantity == 4
    assert ledger.set_quantity(OrderStage.STARTERS, "missing", 4) is False
    assert ledger.set_quantity(OrderStage.STARTERS, "A", -1) is True
    assert ledger.get(OrderStage.STARTERS, "A") is None

    with pytest.raises(LedgerError):
        ledger.set_quantity(OrderStage.STARTERS, "A", "3")


def test_clear_refuses_active_stage(ledger):
    ledger.add(OrderStage.STARTERS, _entry("A"))
    ledger.add(OrderStage.STARTERS, _entry("B"))

    with pytest.raises(LedgerError):
        ledger.clear(OrderStage.STARTERS, active_stage=OrderStage.STARTERS)

    assert ledger.clear(OrderStage.STARTERS, active_stage=OrderStage.MAIN_COURSE) == 2
    assert ledger.is_empty()


def test_finalized_is_not_composable(ledger):
    with pytest.raises(LedgerError):
        ledger.add(OrderStage.FINALIZED, _entry())


def test_frozen_ledger_rejects_mutation(ledger):
    ledger.add(OrderStage.STARTERS, _entry())
    ledger.freeze()

    with pytest.raises(FrozenLedgerError):
        ledger.add(OrderStage.STARTERS, _entry("B"))
    with pytest.raises(FrozenLedgerError):
        ledger.remove(OrderStage.STARTERS, "A")
    with pytest.raises(FrozenLedgerError):
        ledger.set_quantity(OrderStage.STARTERS, "A", 2)

    assert ledger.is_frozen
    assert ledger.item_count(OrderStage.STARTERS) == 1


def test_line_total_rounding():
    entry = _entry(price=9.99, quantity=3)
    assert entry.line_total == 29.97
    assert entry.to_dict()["line_total"] == 29.97


def test_line_id_survives_merges(ledger):
    first = ledger.add(OrderStage.STARTERS, _entry("A"))
    merged = ledger.add(OrderStage.STARTERS, _entry("A", quantity=2))
    ledger.set_quantity(OrderStage.STARTERS, "A", 5)

    assert first.line_id
    assert merged.line_id == first.line_id
    assert ledger.get(OrderStage.STARTERS, "A").line_id == first.line_id
    assert ledger.add(OrderStage.DESSERTS, _entry("A")).line_id != first.line_id
