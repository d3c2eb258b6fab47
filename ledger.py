"""
Stage Item Ledger
=================
In-memory, per-session item collections keyed by stage.

Entries are immutable; every mutation replaces the entry. Each entry keeps
the line id it was given on first add, which becomes the order item id when
flushed, so writing the same entry twice targets the same row.
No I/O happens here - the controller flushes ledgers to the order store.
"""

import logging
import uuid
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, asdict, replace

from stage_state import OrderStage, STAGE_SEQUENCE


logger = logging.getLogger(__name__)


DEFAULT_MAX_QUANTITY = 99


class LedgerError(Exception):
    """Raised when a ledger mutation is not allowed."""
    pass


class StageMismatchError(LedgerError):
    """Raised when items are composed into a stage that is not active."""
    pass


class FrozenLedgerError(LedgerError):
    """Raised when mutating the ledger of a finalized order."""
    pass


@dataclass(frozen=True)
class LedgerEntry:
    """A not-yet-persisted item chosen for one stage."""
    menu_item_id: str
    name: str
    price: float
    quantity: int
    image_url: Optional[str] = None
    notes: Optional[str] = None
    line_id: Optional[str] = None  # order_items.id once flushed

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)

    def with_quantity(self, new_quantity: int) -> 'LedgerEntry':
        """Create new entry with updated quantity."""
        return replace(self, quantity=new_quantity)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["line_total"] = self.line_total
        return data


class StageItemLedger:
    """
    Three ordered item collections, one per composable stage.

    Rules:
    - Quantities accumulate when the same menu item is added twice to a stage
    - Quantity <= 0 removes the entry
    - Removing an absent entry is a no-op
    - Nothing changes once frozen
    """

    def __init__(self, order_id: str, max_quantity_per_item: int = DEFAULT_MAX_QUANTITY):
        self.order_id = order_id
        self.max_quantity_per_item = max_quantity_per_item
        self._stages: Dict[OrderStage, Dict[str, LedgerEntry]] = {
            stage: {} for stage in STAGE_SEQUENCE
        }
        self._frozen = False

    # ========================================================================
    # MUTATION
    # ========================================================================

    def add(self, stage: OrderStage, entry: LedgerEntry) -> LedgerEntry:
        """
        Add an entry to a stage, merging with an existing one.

        Returns:
            The entry now stored for (stage, menu_item_id)

        Raises:
            LedgerError: On invalid input, frozen ledger or quantity limit
        """
        items = self._stage_items(stage)
        self.validate_entry(entry)

        existing = items.get(entry.menu_item_id)
        if existing is not None:
            merged_quantity = existing.quantity + entry.quantity
            self._check_limit(merged_quantity)
            stored = existing.with_quantity(merged_quantity)
        else:
            self._check_limit(entry.quantity)
            stored = replace(entry, line_id=entry.line_id or str(uuid.uuid4()))

        items[entry.menu_item_id] = stored

        logger.debug(
            f"Ledger add: {stored.name} x{stored.quantity} "
            f"(stage={stage.value}, order={self.order_id})"
        )

        return stored

    def remove(self, stage: OrderStage, menu_item_id: str) -> bool:
        """
        Remove an entry.

        Returns:
            True if an entry was removed, False if it was absent
        """
        items = self._stage_items(stage)

        removed = items.pop(menu_item_id, None)
        if removed is None:
            return False

        logger.debug(
            f"Ledger remove: {removed.name} (stage={stage.value}, order={self.order_id})"
        )
        return True

    def set_quantity(self, stage: OrderStage, menu_item_id: str, quantity: int) -> bool:
        """
        Replace the quantity of an entry; quantity <= 0 removes it.

        Returns:
            True if the ledger changed
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise LedgerError(f"Quantity must be an integer: {quantity!r}")

        items = self._stage_items(stage)

        if menu_item_id not in items:
            return False

        if quantity <= 0:
            return self.remove(stage, menu_item_id)

        self._check_limit(quantity)
        items[menu_item_id] = items[menu_item_id].with_quantity(quantity)
        return True

    def clear(self, stage: OrderStage, active_stage: Optional[OrderStage] = None) -> int:
        """
        Wipe a stage the customer is no longer composing.

        Raises:
            LedgerError: If stage is the active one
        """
        if active_stage is not None and stage == active_stage:
            raise LedgerError(
                f"Cannot clear the active stage {stage.value}"
            )

        items = self._stage_items(stage)
        count = len(items)
        items.clear()

        logger.info(f"Cleared {count} entries from {stage.value} (order={self.order_id})")
        return count

    def clear_flushed(self, stage: OrderStage):
        """Drop entries that have been persisted."""
        self._stages[stage].clear()

    def freeze(self):
        """Make the ledger read-only for good."""
        self._frozen = True

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def entries(self, stage: OrderStage) -> List[LedgerEntry]:
        """Entries of one stage, in insertion order."""
        return list(self._stages[stage].values())

    def get(self, stage: OrderStage, menu_item_id: str) -> Optional[LedgerEntry]:
        return self._stages[stage].get(menu_item_id)

    def stage_total(self, stage: OrderStage) -> float:
        return round(sum(e.line_total for e in self._stages[stage].values()), 2)

    def item_count(self, stage: OrderStage) -> int:
        return sum(e.quantity for e in self._stages[stage].values())

    def is_empty(self, stage: Optional[OrderStage] = None) -> bool:
        if stage is not None:
            return not self._stages[stage]
        return all(not items for items in self._stages.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            stage.value: [entry.to_dict() for entry in items.values()]
            for stage, items in self._stages.items()
        }

    # ========================================================================
    # UTILITIES
    # ========================================================================

    def _stage_items(self, stage: OrderStage) -> Dict[str, LedgerEntry]:
        if self._frozen:
            raise FrozenLedgerError(
                f"Ledger for order {self.order_id} is frozen"
            )
        if stage not in self._stages:
            raise LedgerError(f"{stage.value} is not a composable stage")
        return self._stages[stage]

    def validate_entry(self, entry: LedgerEntry):
        if not entry.menu_item_id or not entry.name:
            raise LedgerError("Menu item id and name are required")

        if isinstance(entry.quantity, bool) or not isinstance(entry.quantity, int):
            raise LedgerError(f"Quantity must be an integer: {entry.quantity!r}")

        if entry.quantity <= 0:
            raise LedgerError(f"Quantity must be positive: {entry.quantity}")

        if entry.price is None or entry.price < 0:
            raise LedgerError(f"Invalid price for {entry.name}: {entry.price}")

    def _check_limit(self, quantity: int):
        if quantity > self.max_quantity_per_item:
            raise LedgerError(
                f"Max quantity exceeded: {quantity} > {self.max_quantity_per_item}"
            )
