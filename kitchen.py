"""
Kitchen Visibility
==================
Read-side rules for kitchen tooling.

A staged order exists in the store from its first course, but the kitchen
must not see it until the customer finalizes. Visibility is derived from
persisted metadata and never stored.
"""

import logging
from typing import Iterable, List, Optional

from order_store import (
    Order,
    OrderStore,
    KitchenStatus,
    TableStatus,
)


logger = logging.getLogger(__name__)


# Statuses scanned by "needs preparation" views
ACTIVE_KITCHEN_STATUSES = (
    KitchenStatus.PENDING,
    KitchenStatus.PREPARING,
    KitchenStatus.READY,
)


class KitchenVisibilityError(Exception):
    """Raised when kitchen tooling acts on an order it must not see."""
    pass


def is_kitchen_visible(order: Order) -> bool:
    """False only for staged orders that have not been finalized."""
    return not (order.is_staged and not order.is_finalized)


def filter_kitchen_visible(orders: Iterable[Order]) -> List[Order]:
    """Drop orders the kitchen must not see."""
    return [order for order in orders if is_kitchen_visible(order)]


async def list_kitchen_orders(
    store: OrderStore,
    statuses: Optional[Iterable[KitchenStatus]] = None,
    limit: int = 50
) -> List[Order]:
    """
    Orders awaiting kitchen action.

    Args:
        store: Order store
        statuses: Kitchen statuses to scan (defaults to the active queue)
        limit: Max visible orders returned

    Returns:
        Visible orders, newest first
    """
    scanned = await store.list_orders(
        statuses=list(statuses) if statuses else list(ACTIVE_KITCHEN_STATUSES),
        kitchen_visible_only=True,
        limit=limit
    )

    visible = filter_kitchen_visible(scanned)
    if len(visible) != len(scanned):
        logger.warning(
            f"Kitchen scan returned {len(scanned) - len(visible)} unfinalized staged orders"
        )

    return visible


async def update_order_status(store: OrderStore, order_id: str, status) -> Order:
    """
    Move an order along the kitchen pipeline.

    Completing an order frees its table.

    Raises:
        ValueError: Unknown status
        KitchenVisibilityError: Order is a staged order still being composed
        RecordNotFoundError: No such order
    """
    try:
        new_status = status if isinstance(status, KitchenStatus) else KitchenStatus(status)
    except ValueError:
        raise ValueError(f"Invalid status: {status!r}")

    order = await store.get_order(order_id)

    if not is_kitchen_visible(order):
        raise KitchenVisibilityError(
            f"Order {order.order_number} has not been finalized"
        )

    updated = await store.update_order(order_id, {"status": new_status})

    logger.info(
        f"Order {updated.order_number}: {order.status.value} -> {new_status.value}"
    )

    if new_status == KitchenStatus.COMPLETED and updated.table_id:
        await store.set_table_status(updated.table_id, TableStatus.AVAILABLE)
        logger.info(f"Table {updated.table_id} released")

    return updated
