"""
Order Store (Supabase)
======================
Async adapter over the Supabase tables that back orders, order items and
restaurant tables.

- Typed records instead of raw rows
- Compare-and-set updates (update ... eq(expected) + returned representation)
- Timeouts and a circuit breaker around every call
- Every failure surfaces as StoreError; nothing is retried here
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Any, Optional, Callable, Iterable
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError

from stage_state import OrderStage


logger = logging.getLogger(__name__)


# Configuration
DEFAULT_TIMEOUT = 10.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds

ORDERS_TABLE = "orders"
ORDER_ITEMS_TABLE = "order_items"
TABLES_TABLE = "tables"

# PostgREST form of "not (is_staged and not is_finalized)"
KITCHEN_VISIBLE_FILTER = "is_staged.eq.false,is_finalized.eq.true"


# ============================================================================
# ERRORS
# ============================================================================

class StoreError(Exception):
    """Raised when a store operation fails."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class RecordNotFoundError(StoreError):
    """Raised when the requested row does not exist."""
    pass


# ============================================================================
# RECORDS
# ============================================================================

class KitchenStatus(Enum):
    """Kitchen-facing order lifecycle (independent of staging)."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TableStatus(Enum):
    """Restaurant table availability."""
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _column_value(value: Any) -> Any:
    """Convert a Python value into what PostgREST expects."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _filter_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return _column_value(value)


@dataclass
class Order:
    """A persisted order row."""
    id: str
    order_number: str
    table_id: Optional[str] = None
    status: KitchenStatus = KitchenStatus.PENDING
    is_staged: bool = False
    current_stage: Optional[OrderStage] = None
    is_finalized: bool = False
    subtotal: float = 0.0
    tax_amount: float = 0.0
    total_amount: float = 0.0
    payment_method: Optional[str] = None
    payment_status: str = "pending"
    special_instructions: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finalized_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Order':
        stage = row.get("current_stage")
        return cls(
            id=row["id"],
            order_number=row.get("order_number") or "",
            table_id=row.get("table_id"),
            status=KitchenStatus(row.get("status") or KitchenStatus.PENDING.value),
            is_staged=bool(row.get("is_staged", False)),
            current_stage=OrderStage(stage) if stage else None,
            is_finalized=bool(row.get("is_finalized", False)),
            subtotal=float(row.get("subtotal") or 0),
            tax_amount=float(row.get("tax_amount") or 0),
            total_amount=float(row.get("total_amount") or 0),
            payment_method=row.get("payment_method"),
            payment_status=row.get("payment_status") or "pending",
            special_instructions=row.get("special_instructions"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            finalized_at=row.get("finalized_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: _column_value(value) for key, value in asdict(self).items()}


@dataclass
class OrderItem:
    """A persisted order line, tagged with the stage it was ordered in."""
    id: str
    order_id: str
    menu_item_id: str
    quantity: int
    unit_price: float
    total_price: float
    stage: Optional[OrderStage] = None
    name: Optional[str] = None
    special_instructions: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'OrderItem':
        stage = row.get("stage")
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            menu_item_id=row["menu_item_id"],
            quantity=int(row["quantity"]),
            unit_price=float(row["unit_price"]),
            total_price=float(row["total_price"]),
            stage=OrderStage(stage) if stage else None,
            name=row.get("name"),
            special_instructions=row.get("special_instructions"),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: _column_value(value) for key, value in asdict(self).items()}


@dataclass
class Table:
    """A restaurant table row."""
    id: str
    table_number: Optional[int] = None
    capacity: Optional[int] = None
    status: TableStatus = TableStatus.AVAILABLE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Table':
        return cls(
            id=row["id"],
            table_number=row.get("table_number"),
            capacity=row.get("capacity"),
            status=TableStatus(row.get("status") or TableStatus.AVAILABLE.value),
        )


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Trips after consecutive store failures and rejects calls while open.

    Any failure in HALF_OPEN reopens the circuit; RECOVERY_SUCCESSES
    consecutive successes close it.
    """

    RECOVERY_SUCCESSES = 2

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT,
        name: str = "order_store"
    ):
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self.trip_count = 0
        self.reset()

    def reset(self):
        """Close the circuit and forget past failures."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.last_failed_operation: Optional[str] = None

    def record_success(self):
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.RECOVERY_SUCCESSES:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info(f"Circuit {self.name} closed (recovered)")

    def record_failure(self, operation: Optional[str] = None):
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)
        self.last_failed_operation = operation

        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED and self.failure_count >= self.threshold
        ):
            self._trip()

    def can_execute(self) -> bool:
        """Check if a call may go to the store."""
        if self.state != CircuitState.OPEN:
            return True

        elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
        if elapsed < self.timeout:
            return False

        self.state = CircuitState.HALF_OPEN
        self.success_count = 0
        logger.info(f"Circuit {self.name} half-open (testing)")
        return True

    def get_state(self) -> str:
        return self.state.value

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failure_count,
            "trips": self.trip_count,
            "last_failed_operation": self.last_failed_operation,
        }

    def _trip(self):
        self.state = CircuitState.OPEN
        self.success_count = 0
        self.trip_count += 1
        logger.error(
            f"Circuit {self.name} opened after {self.failure_count} failures "
            f"(last: {self.last_failed_operation})"
        )


# ============================================================================
# ORDER STORE
# ============================================================================

class OrderStore:
    """
    Supabase-backed order store.

    The supabase client is synchronous, so each request runs in the default
    executor under a timeout.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.client = client
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        if self.client is None:
            self._initialize_client()

        logger.info("OrderStore initialized")

    def _initialize_client(self):
        """Initialize Supabase client from configuration."""
        from config import get_config

        settings = get_config().supabase
        self.client = create_client(settings.url, settings.key)
        self.timeout = settings.timeout
        logger.info("Supabase client initialized")

    async def _execute(
        self,
        operation: str,
        query: Callable[[], Any],
        write: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Run one PostgREST request.

        Args:
            operation: Name used in logs and errors
            query: Builds the request (without calling execute)
            write: Count as a write in stats

        Returns:
            Returned rows

        Raises:
            StoreError: On any failure
        """
        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, rejecting {operation}")
            raise StoreError(f"{operation} rejected: store unavailable")

        try:
            loop = asyncio.get_event_loop()

            result = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: query().execute()),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            logger.error(f"{operation} timed out after {self.timeout}s")
            self.error_count += 1
            self.circuit_breaker.record_failure(operation)
            raise StoreError(f"{operation} timed out")

        except APIError as e:
            logger.error(f"{operation} failed: {e.message}")
            self.error_count += 1
            self.circuit_breaker.record_failure(operation)
            raise StoreError(f"{operation} failed: {e.message}", code=e.code) from e

        except Exception as e:
            logger.error(f"{operation} error: {str(e)}")
            self.error_count += 1
            self.circuit_breaker.record_failure(operation)
            raise StoreError(f"{operation} failed: {str(e)}") from e

        if write:
            self.write_count += 1
        else:
            self.read_count += 1
        self.circuit_breaker.record_success()

        return result.data or []

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def create_order(self, shell: Dict[str, Any]) -> Order:
        """Insert an order row and return it."""
        now = _utc_now_iso()
        row = {key: _column_value(value) for key, value in shell.items()}
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)

        rows = await self._execute(
            "create_order",
            lambda: self.client.table(ORDERS_TABLE).insert(row),
            write=True
        )

        if not rows:
            raise StoreError("create_order returned no row")

        return Order.from_row(rows[0])

    async def get_order(self, order_id: str) -> Order:
        """
        Fetch an order.

        Raises:
            RecordNotFoundError: If no order has this id
        """
        rows = await self._execute(
            "get_order",
            lambda: self.client.table(ORDERS_TABLE).select("*").eq("id", order_id).limit(1)
        )

        if not rows:
            raise RecordNotFoundError(f"Order not found: {order_id}")

        return Order.from_row(rows[0])

    async def update_order(
        self,
        order_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None
    ) -> Optional[Order]:
        """
        Update an order row, optionally as a compare-and-set.

        Args:
            order_id: Order identifier
            changes: Columns to write
            expected: Column values the row must still hold for the write
                to apply

        Returns:
            The updated order, or None when `expected` did not match

        Raises:
            RecordNotFoundError: If no row matched and no expectation was given
        """
        row = {key: _column_value(value) for key, value in changes.items()}
        row["updated_at"] = _utc_now_iso()

        def query():
            request = self.client.table(ORDERS_TABLE).update(row).eq("id", order_id)
            for column, value in (expected or {}).items():
                request = request.eq(column, _filter_value(value))
            return request

        rows = await self._execute("update_order", query, write=True)

        if not rows:
            if expected:
                logger.info(f"Conditional update skipped for order {order_id}: {expected}")
                return None
            raise RecordNotFoundError(f"Order not found: {order_id}")

        return Order.from_row(rows[0])

    async def list_orders(
        self,
        statuses: Optional[Iterable[KitchenStatus]] = None,
        is_staged: Optional[bool] = None,
        kitchen_visible_only: bool = False,
        limit: int = 50
    ) -> List[Order]:
        """
        List orders, newest first.

        With `kitchen_visible_only`, staged orders still being composed are
        excluded by the query itself, so they never count against `limit`.
        """
        status_values = [_column_value(s) for s in statuses] if statuses else None

        def query():
            request = self.client.table(ORDERS_TABLE).select("*")
            if status_values:
                request = request.in_("status", status_values)
            if is_staged is not None:
                request = request.eq("is_staged", _filter_value(is_staged))
            if kitchen_visible_only:
                request = request.or_(KITCHEN_VISIBLE_FILTER)
            return request.order("created_at", desc=True).limit(limit)

        rows = await self._execute("list_orders", query)
        return [Order.from_row(row) for row in rows]

    async def find_open_staged_order(self, table_id: str) -> Optional[Order]:
        """Find an unfinalized, uncancelled staged order bound to a table."""
        rows = await self._execute(
            "find_open_staged_order",
            lambda: self.client.table(ORDERS_TABLE)
                .select("*")
                .eq("table_id", table_id)
                .eq("is_staged", "true")
                .eq("is_finalized", "false")
                .neq("status", KitchenStatus.CANCELLED.value)
                .limit(1)
        )
        return Order.from_row(rows[0]) if rows else None

    async def list_stale_staged_orders(self, cutoff: datetime) -> List[Order]:
        """Open staged orders not touched since `cutoff`."""
        rows = await self._execute(
            "list_stale_staged_orders",
            lambda: self.client.table(ORDERS_TABLE)
                .select("*")
                .eq("is_staged", "true")
                .eq("is_finalized", "false")
                .neq("status", KitchenStatus.CANCELLED.value)
                .lt("updated_at", cutoff.isoformat())
        )
        return [Order.from_row(row) for row in rows]

    # ========================================================================
    # ORDER ITEMS
    # ========================================================================

    async def insert_order_items(
        self,
        order_id: str,
        items: List[Dict[str, Any]]
    ) -> List[OrderItem]:
        """
        Write order lines in one request.

        Lines carrying an `id` are upserted on it, so repeating a write whose
        outcome was unknown (timeout) does not duplicate lines.
        """
        if not items:
            return []

        now = _utc_now_iso()
        rows = []
        for item in items:
            row = {key: _column_value(value) for key, value in item.items()}
            row["order_id"] = order_id
            if not row.get("id"):
                row["id"] = str(uuid.uuid4())
            row.setdefault("created_at", now)
            rows.append(row)

        inserted = await self._execute(
            "insert_order_items",
            lambda: self.client.table(ORDER_ITEMS_TABLE).upsert(rows, on_conflict="id"),
            write=True
        )

        if len(inserted) != len(rows):
            raise StoreError(
                f"insert_order_items stored {len(inserted)} of {len(rows)} rows"
            )

        return [OrderItem.from_row(row) for row in inserted]

    async def list_order_items(
        self,
        order_id: str,
        stage: Optional[OrderStage] = None
    ) -> List[OrderItem]:
        """List the lines of an order, optionally for one stage."""
        def query():
            request = self.client.table(ORDER_ITEMS_TABLE).select("*").eq("order_id", order_id)
            if stage is not None:
                request = request.eq("stage", stage.value)
            return request.order("created_at")

        rows = await self._execute("list_order_items", query)
        return [OrderItem.from_row(row) for row in rows]

    async def update_order_item(self, item_id: str, changes: Dict[str, Any]) -> OrderItem:
        """Update one order line."""
        row = {key: _column_value(value) for key, value in changes.items()}

        rows = await self._execute(
            "update_order_item",
            lambda: self.client.table(ORDER_ITEMS_TABLE).update(row).eq("id", item_id),
            write=True
        )

        if not rows:
            raise RecordNotFoundError(f"Order item not found: {item_id}")

        return OrderItem.from_row(rows[0])

    async def delete_order_item(self, item_id: str):
        """Delete one order line."""
        rows = await self._execute(
            "delete_order_item",
            lambda: self.client.table(ORDER_ITEMS_TABLE).delete().eq("id", item_id),
            write=True
        )

        if not rows:
            raise RecordNotFoundError(f"Order item not found: {item_id}")

    # ========================================================================
    # TABLES
    # ========================================================================

    async def get_table(self, table_id: str) -> Table:
        """
        Fetch a restaurant table.

        Raises:
            RecordNotFoundError: If no table has this id
        """
        rows = await self._execute(
            "get_table",
            lambda: self.client.table(TABLES_TABLE).select("*").eq("id", table_id).limit(1)
        )

        if not rows:
            raise RecordNotFoundError(f"Table not found: {table_id}")

        return Table.from_row(rows[0])

    async def set_table_status(self, table_id: str, status: TableStatus) -> Table:
        """Set table availability."""
        rows = await self._execute(
            "set_table_status",
            lambda: self.client.table(TABLES_TABLE)
                .update({"status": status.value, "updated_at": _utc_now_iso()})
                .eq("id", table_id),
            write=True
        )

        if not rows:
            raise RecordNotFoundError(f"Table not found: {table_id}")

        return Table.from_row(rows[0])

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit": self.circuit_breaker.get_stats()
        }

    def is_healthy(self) -> bool:
        """Check if the store is accepting requests."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )
