import pytest

from kitchen import (
    KitchenVisibilityError,
    is_kitchen_visible,
    list_kitchen_orders,
    update_order_status,
)
from order_store import Order, KitchenStatus, RecordNotFoundError


@pytest.mark.parametrize("is_staged, is_finalized, visible", [
    (False, False, True),
    (False, True, True),
    (True, False, False),
    (True, True, True),
])
def test_visibility(is_staged, is_finalized, visible):
    order = Order(id="o", order_number="X", is_staged=is_staged, is_finalized=is_finalized)
    assert is_kitchen_visible(order) is visible


def _seed(fake_client, **row):
    base = {
        "order_number": "ORD000001",
        "table_id": "T1",
        "status": "pending",
        "is_staged": False,
        "is_finalized": False,
        "created_at": "2026-01-01T12:00:00+00:00",
    }
    base.update(row)
    fake_client.tables["orders"].append(base)
    return base


async def test_list_hides_unfinalized_staged_orders(store, fake_client):
    _seed(fake_client, id="regular")
    _seed(fake_client, id="composing", is_staged=True)
    _seed(fake_client, id="finalized", is_staged=True, is_finalized=True)
    _seed(fake_client, id="done", status="completed")

    orders = await list_kitchen_orders(store)

    assert {order.id for order in orders} == {"regular", "finalized"}


async def test_list_with_status_filter(store, fake_client):
    _seed(fake_client, id="a", status="ready")
    _seed(fake_client, id="b", status="pending")

    orders = await list_kitchen_orders(store, statuses=[KitchenStatus.READY])

    assert [order.id for order in orders] == ["a"]


async def test_status_update_on_staged_order_in_progress(store, fake_client):
    _seed(fake_client, id="composing", is_staged=True)

    with pytest.raises(KitchenVisibilityError):
        await update_order_status(store, "composing", "preparing")

    assert fake_client.rows("orders", id="composing")[0]["status"] == "pending"


async def test_completing_order_frees_table(store, fake_client):
    _seed(fake_client, id="o1")
    fake_client.rows("tables", id="T1")[0]["status"] = "occupied"

    order = await update_order_status(store, "o1", "completed")

    assert order.status == KitchenStatus.COMPLETED
    assert fake_client.rows("tables", id="T1")[0]["status"] == "available"


async def test_status_update_errors(store, fake_client):
    _seed(fake_client, id="o1")

    with pytest.raises(ValueError):
        await update_order_status(store, "o1", "eaten")

    with pytest.raises(RecordNotFoundError):
        await update_order_status(store, "missing", "ready")


async def test_composing_orders_do_not_consume_the_limit(store, fake_client):
    _seed(fake_client, id="ready-to-cook", is_staged=True, is_finalized=True,
          created_at="2026-01-01T12:00:00+00:00")
    for minute in range(1, 4):
        _seed(fake_client, id=f"composing-{minute}", is_staged=True,
              created_at=f"2026-01-01T12:0{minute}:00+00:00")

    orders = await list_kitchen_orders(store, limit=3)

    assert [order.id for order in orders] == ["ready-to-cook"]
