"""
Staged Order Controller
=======================
Course-by-course ordering: one order built across starters, main course
and desserts, persisted stage by stage and finalized exactly once.

Guarantees:
- A stage's items reach the store before the stage pointer moves
- A failed flush leaves stage pointer and finalized flag untouched
- Items already persisted are never inserted twice on retry
- Finalize is one-way; a second finalize raises AlreadyFinalizedError
- Order rows are written with compare-and-set on is_finalized/current_stage
"""

import asyncio
import time
import uuid
import structlog
from typing import Dict, List, Any, Optional, Iterable, Union
from datetime import datetime, timedelta, timezone

from prometheus_client import Counter, Histogram, Gauge

from config import StagingConfig
from ledger import (
    LedgerEntry,
    LedgerError,
    StageItemLedger,
    StageMismatchError,
    FrozenLedgerError,
)
from order_store import (
    Order,
    OrderItem,
    OrderStore,
    Table,
    KitchenStatus,
    TableStatus,
    StoreError,
    RecordNotFoundError,
)
from stage_state import (
    OrderStage,
    STAGE_SEQUENCE,
    StageStateMachine,
    InvalidTransitionError,
    AlreadyFinalizedError,
    parse_stage,
)

# Structured logging
logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

staged_sessions_total = Counter(
    'staged_sessions_total',
    'Staged order session creation attempts',
    ['result']
)
staged_sessions_open = Gauge(
    'staged_sessions_open',
    'Cached staged sessions not yet finalized'
)
stage_flushes_total = Counter(
    'stage_flushes_total',
    'Stage ledger flushes',
    ['stage', 'result']
)
stage_transitions_total = Counter(
    'stage_transitions_total',
    'Stage pointer transitions',
    ['from_stage', 'to_stage']
)
staged_finalizations_total = Counter(
    'staged_finalizations_total',
    'Finalize attempts',
    ['result']
)
staged_order_value = Histogram(
    'staged_order_value',
    'Total amount of finalized staged orders'
)
abandoned_sessions_reclaimed_total = Counter(
    'abandoned_sessions_reclaimed_total',
    'Abandoned staged orders cancelled by reclamation'
)


# ============================================================================
# ERRORS
# ============================================================================

class StagedOrderError(Exception):
    """Base class for staged ordering failures."""
    pass


class InvalidTableError(StagedOrderError):
    """Session requested for a missing or unusable table."""
    pass


class TableSessionConflictError(InvalidTableError):
    """Table already holds an open staged order."""
    pass


class PersistenceError(StagedOrderError):
    """The order store failed; no partial state transition happened."""
    pass


class FlushError(PersistenceError):
    """Stage items (or the totals that follow them) could not be persisted."""
    pass


class SessionNotFoundError(StagedOrderError):
    """No staged session exists for the given order id."""
    pass


class SessionBusyError(StagedOrderError):
    """The session is in the middle of a store operation."""
    pass


class ItemNotFoundError(StagedOrderError):
    """Persisted order item does not belong to the session's order."""
    pass


# ============================================================================
# HELPERS
# ============================================================================

def generate_order_number(prefix: str) -> str:
    """Prefix, last six digits of the millisecond clock, six random hex digits."""
    return f"{prefix}{str(int(time.time() * 1000))[-6:]}{uuid.uuid4().hex[:6].upper()}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_ledger_entry(item: Union[LedgerEntry, Dict[str, Any]]) -> LedgerEntry:
    """
    Build a ledger entry from a request payload.

    Raises:
        LedgerError: Missing field or non-numeric price
    """
    if isinstance(item, LedgerEntry):
        return item

    try:
        menu_item_id = item["menu_item_id"]
        name = item["name"]
        raw_price = item["price"]
    except KeyError as e:
        raise LedgerError(f"Missing item field: {e.args[0]}")

    try:
        price = round(float(raw_price), 2)
    except (TypeError, ValueError):
        raise LedgerError(f"Invalid price for {name}: {raw_price!r}")

    return LedgerEntry(
        menu_item_id=str(menu_item_id),
        name=name,
        price=price,
        quantity=item.get("quantity", 1),
        image_url=item.get("image_url"),
        notes=item.get("notes") or item.get("special_instructions"),
    )


# ============================================================================
# SESSION
# ============================================================================

class StagedOrderSession:
    """
    Client-side view of one staged order.

    Owns the stage ledgers until their items are flushed.
    """

    def __init__(
        self,
        session_order_id: str,
        table_id: Optional[str],
        order_number: str,
        current_stage: OrderStage = OrderStage.STARTERS,
        completed_stages: Optional[Iterable[OrderStage]] = None,
        is_finalized: bool = False,
        max_quantity_per_item: int = 99
    ):
        self.session_order_id = session_order_id
        self.table_id = table_id
        self.order_number = order_number
        self.state_machine = StageStateMachine(
            session_order_id,
            initial_stage=current_stage,
            completed_stages=completed_stages
        )
        self.stage_items = StageItemLedger(session_order_id, max_quantity_per_item)
        self.is_finalized = is_finalized

        self.created_at = _utc_now()
        self.last_activity = self.created_at
        self.lock = asyncio.Lock()

        if is_finalized:
            self.stage_items.freeze()

    @property
    def current_stage(self) -> OrderStage:
        return self.state_machine.current_stage

    @property
    def completed_stages(self) -> List[OrderStage]:
        return self.state_machine.completed_stages

    @property
    def is_busy(self) -> bool:
        return self.lock.locked()

    def touch(self):
        self.last_activity = _utc_now()

    def idle_seconds(self) -> float:
        return (_utc_now() - self.last_activity).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_order_id": self.session_order_id,
            "order_number": self.order_number,
            "table_id": self.table_id,
            "stage": self.current_stage.value,
            "completed_stages": [stage.value for stage in self.completed_stages],
            "stage_items": self.stage_items.to_dict(),
            "stage_totals": {
                stage.value: self.stage_items.stage_total(stage)
                for stage in STAGE_SEQUENCE
            },
            "is_finalized": self.is_finalized,
            "last_activity": self.last_activity.isoformat(),
        }

    def __repr__(self):
        return (
            f"<StagedOrderSession order_id={self.session_order_id} "
            f"stage={self.current_stage.value}>"
        )


class SessionRegistry:
    """Cache of live sessions, keyed by order id and by table."""

    def __init__(self):
        self._sessions: Dict[str, StagedOrderSession] = {}
        self._by_table: Dict[str, str] = {}
        self._table_locks: Dict[str, asyncio.Lock] = {}

    def add(self, session: StagedOrderSession):
        self._sessions[session.session_order_id] = session
        if session.table_id and not session.is_finalized:
            self._by_table[session.table_id] = session.session_order_id
        self._update_gauge()

    def get(self, order_id: str) -> Optional[StagedOrderSession]:
        return self._sessions.get(order_id)

    def for_table(self, table_id: str) -> Optional[StagedOrderSession]:
        order_id = self._by_table.get(table_id)
        return self._sessions.get(order_id) if order_id else None

    def table_lock(self, table_id: str) -> asyncio.Lock:
        """Serializes session creation for one table."""
        return self._table_locks.setdefault(table_id, asyncio.Lock())

    def discard(self, order_id: str):
        session = self._sessions.pop(order_id, None)
        if session and session.table_id and self._by_table.get(session.table_id) == order_id:
            del self._by_table[session.table_id]
        self._update_gauge()

    def sessions(self) -> List[StagedOrderSession]:
        return list(self._sessions.values())

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, order_id):
        return order_id in self._sessions

    def _update_gauge(self):
        staged_sessions_open.set(
            sum(1 for s in self._sessions.values() if not s.is_finalized)
        )


# ============================================================================
# CONTROLLER
# ============================================================================

class StagedOrderController:
    """
    Orchestrates the staged order lifecycle.

    Ledger edits are local and synchronous. Every operation that touches
    the store runs under the session lock, so calls against one session
    are serialized while different sessions proceed independently.
    """

    def __init__(
        self,
        store: OrderStore,
        settings: Optional[StagingConfig] = None,
        registry: Optional[SessionRegistry] = None
    ):
        self.store = store
        self.settings = settings or StagingConfig()
        self.registry = registry or SessionRegistry()

    # ========================================================================
    # SESSION LIFECYCLE
    # ========================================================================

    async def create_session(self, table_id: str) -> StagedOrderSession:
        """
        Open a staged order for a table.

        Raises:
            InvalidTableError: Unknown table or failed lookup
            TableSessionConflictError: Table already has an open staged order
            PersistenceError: Order shell or table update failed
        """
        if not table_id:
            raise InvalidTableError("table_id is required")

        try:
            table = await self.store.get_table(table_id)
        except StoreError as e:
            staged_sessions_total.labels(result='invalid_table').inc()
            logger.warning("staged_session_invalid_table", table_id=table_id, error=str(e))
            raise InvalidTableError(f"Invalid table {table_id}: {e.message}") from e

        async with self.registry.table_lock(table.id):
            return await self._open_session(table)

    async def _open_session(self, table: Table) -> StagedOrderSession:
        """Check exclusivity, create the shell and occupy the table."""
        if self.settings.exclusive_table_sessions:
            await self._ensure_table_free(table.id)

        shell = {
            "table_id": table.id,
            "order_number": generate_order_number(self.settings.staged_order_prefix),
            "status": KitchenStatus.PENDING,
            "is_staged": True,
            "current_stage": OrderStage.STARTERS,
            "is_finalized": False,
            "subtotal": 0.0,
            "tax_amount": 0.0,
            "total_amount": 0.0,
            "payment_status": "pending",
        }

        try:
            order = await self.store.create_order(shell)
        except StoreError as e:
            staged_sessions_total.labels(result='store_error').inc()
            logger.error("staged_session_create_failed", table_id=table.id, error=str(e))
            raise PersistenceError(f"Could not create order: {e.message}") from e

        try:
            await self.store.set_table_status(table.id, TableStatus.OCCUPIED)
        except StoreError as e:
            staged_sessions_total.labels(result='store_error').inc()
            logger.error(
                "staged_session_table_update_failed",
                table_id=table.id,
                order_id=order.id,
                error=str(e)
            )
            await self._cancel_shell(order)
            raise PersistenceError(f"Could not occupy table {table.id}: {e.message}") from e

        session = StagedOrderSession(
            session_order_id=order.id,
            table_id=table.id,
            order_number=order.order_number,
            max_quantity_per_item=self.settings.max_quantity_per_item
        )
        self.registry.add(session)

        staged_sessions_total.labels(result='created').inc()
        logger.info(
            "staged_session_created",
            order_id=order.id,
            order_number=order.order_number,
            table_id=table.id
        )

        return session

    async def resume_session(self, order_id: str) -> StagedOrderSession:
        """
        Return the cached session, or rebuild it from the persisted order.

        A rebuilt session starts with empty ledgers; earlier stages count as
        completed.

        Raises:
            SessionNotFoundError: Unknown, non-staged or cancelled order
            PersistenceError: Store failure
        """
        cached = self.registry.get(order_id)
        if cached is not None:
            return cached

        try:
            order = await self.store.get_order(order_id)
        except RecordNotFoundError as e:
            raise SessionNotFoundError(f"No staged order {order_id}") from e
        except StoreError as e:
            raise PersistenceError(f"Could not load order {order_id}: {e.message}") from e

        if not order.is_staged:
            raise SessionNotFoundError(f"Order {order.order_number} is not a staged order")

        if order.status == KitchenStatus.CANCELLED and not order.is_finalized:
            raise SessionNotFoundError(f"Order {order.order_number} was cancelled")

        # Another caller may have resumed while we awaited
        cached = self.registry.get(order_id)
        if cached is not None:
            return cached

        stage = order.current_stage or OrderStage.STARTERS
        if order.is_finalized or stage == OrderStage.FINALIZED:
            stage = OrderStage.FINALIZED
            completed = list(STAGE_SEQUENCE)
        else:
            completed = list(STAGE_SEQUENCE[:STAGE_SEQUENCE.index(stage)])

        session = StagedOrderSession(
            session_order_id=order.id,
            table_id=order.table_id,
            order_number=order.order_number,
            current_stage=stage,
            completed_stages=completed,
            is_finalized=order.is_finalized,
            max_quantity_per_item=self.settings.max_quantity_per_item
        )
        # Finalized orders are read-only snapshots and are not cached
        if not session.is_finalized:
            self.registry.add(session)

        logger.info(
            "staged_session_resumed",
            order_id=order.id,
            stage=stage.value,
            is_finalized=order.is_finalized
        )

        return session

    def get_session(self, order_id: str) -> StagedOrderSession:
        """
        Cached session lookup.

        Raises:
            SessionNotFoundError: Session not cached
        """
        session = self.registry.get(order_id)
        if session is None:
            raise SessionNotFoundError(f"No active session for order {order_id}")
        return session

    # ========================================================================
    # LEDGER OPERATIONS (local only)
    # ========================================================================

    def add_item(
        self,
        session: StagedOrderSession,
        stage: Union[OrderStage, str],
        item: Union[LedgerEntry, Dict[str, Any]]
    ) -> LedgerEntry:
        """Add an item to the active stage."""
        stage = self._composable_stage(session, stage)
        entry = session.stage_items.add(stage, to_ledger_entry(item))
        session.touch()
        return entry

    def remove_item(
        self,
        session: StagedOrderSession,
        stage: Union[OrderStage, str],
        menu_item_id: str
    ) -> bool:
        """Remove an item from a stage; absent items are ignored."""
        self._ensure_editable(session)
        removed = session.stage_items.remove(parse_stage(stage), menu_item_id)
        session.touch()
        return removed

    def set_quantity(
        self,
        session: StagedOrderSession,
        stage: Union[OrderStage, str],
        menu_item_id: str,
        quantity: int
    ) -> bool:
        """Set an item quantity in the active stage; <= 0 removes."""
        stage = self._composable_stage(session, stage)
        changed = session.stage_items.set_quantity(stage, menu_item_id, quantity)
        session.touch()
        return changed

    def clear_stage(self, session: StagedOrderSession, stage: Union[OrderStage, str]) -> int:
        """Wipe a completed stage's unsaved selections."""
        self._ensure_editable(session)
        cleared = session.stage_items.clear(parse_stage(stage), active_stage=session.current_stage)
        session.touch()
        return cleared

    # ========================================================================
    # STAGE PROTOCOL
    # ========================================================================

    async def commit_stage_items(
        self,
        session: StagedOrderSession,
        items: Optional[List[Union[LedgerEntry, Dict[str, Any]]]] = None,
        stage: Optional[Union[OrderStage, str]] = None
    ) -> List[OrderItem]:
        """
        Persist the active stage's items without moving the stage pointer.

        Args:
            session: Session to commit
            items: Extra items merged into the active stage before flushing
            stage: Stage the caller believes is active

        Returns:
            Order items written by this call
        """
        async with session.lock:
            self._ensure_open(session)
            active = session.current_stage

            if stage is not None and parse_stage(stage) != active:
                raise StageMismatchError(
                    f"Stage {parse_stage(stage).value} is not active ({active.value})"
                )

            entries = [to_ledger_entry(item) for item in items or []]
            for entry in entries:
                session.stage_items.validate_entry(entry)
            for entry in entries:
                session.stage_items.add(active, entry)

            await self._load_open_order(session)
            inserted = await self._flush_stage(session, active)

            if inserted:
                await self._write_totals(session, {}, expected={"is_finalized": False})

            session.touch()

            logger.info(
                "stage_items_committed",
                order_id=session.session_order_id,
                stage=active.value,
                items=len(inserted)
            )

            return inserted

    async def advance_stage(self, session: StagedOrderSession) -> StagedOrderSession:
        """
        Flush the current stage and move to the next one.

        Raises:
            InvalidTransitionError: Already at the last stage
            AlreadyFinalizedError: Order finalized
            FlushError: Items or totals could not be persisted
        """
        async with session.lock:
            self._ensure_open(session)
            current = session.current_stage
            target = session.state_machine.next_stage()

            await self._load_open_order(session)
            await self._flush_stage(session, current)

            await self._write_totals(
                session,
                {"current_stage": target},
                expected={"is_finalized": False, "current_stage": current}
            )

            session.state_machine.advance(reason="advance_stage")
            session.touch()

            stage_transitions_total.labels(from_stage=current.value, to_stage=target.value).inc()
            logger.info(
                "stage_advanced",
                order_id=session.session_order_id,
                from_stage=current.value,
                to_stage=target.value
            )

            return session

    async def retreat_stage(self, session: StagedOrderSession) -> StagedOrderSession:
        """
        Reopen the previous stage.

        Items already persisted for that stage stay persisted.

        Raises:
            InvalidTransitionError: Already at the first stage
            AlreadyFinalizedError: Order finalized
            PersistenceError: Stage pointer could not be stored
        """
        async with session.lock:
            self._ensure_open(session)
            current = session.current_stage
            target = session.state_machine.previous_stage()

            try:
                updated = await self.store.update_order(
                    session.session_order_id,
                    {"current_stage": target},
                    expected={"is_finalized": False, "current_stage": current}
                )
            except StoreError as e:
                logger.error(
                    "stage_retreat_failed",
                    order_id=session.session_order_id,
                    error=str(e)
                )
                raise PersistenceError(f"Could not store stage change: {e.message}") from e

            if updated is None:
                await self._raise_conflict(session)

            session.state_machine.retreat(reason="retreat_stage")
            session.touch()

            stage_transitions_total.labels(from_stage=current.value, to_stage=target.value).inc()
            logger.info(
                "stage_retreated",
                order_id=session.session_order_id,
                from_stage=current.value,
                to_stage=target.value
            )

            return session

    async def finalize(
        self,
        session: StagedOrderSession,
        payment_method: Optional[str] = None
    ) -> Order:
        """
        Flush what is left and hand the order to the kitchen.

        Raises:
            AlreadyFinalizedError: Order was finalized before
            FlushError: Items or the finalize write failed (order stays unfinalized)
        """
        async with session.lock:
            if session.is_finalized:
                staged_finalizations_total.labels(result='already_finalized').inc()
                raise AlreadyFinalizedError(
                    f"Order {session.order_number} is already finalized"
                )

            await self._load_open_order(session)
            left_stage = session.current_stage

            # The active stage, plus anything left behind by a retreat
            for stage in STAGE_SEQUENCE:
                await self._flush_stage(session, stage)

            changes = {
                "is_finalized": True,
                "finalized_at": _utc_now(),
                "current_stage": OrderStage.FINALIZED,
                "status": KitchenStatus.PENDING,
            }
            if payment_method:
                changes["payment_method"] = payment_method

            try:
                order = await self._write_totals(
                    session,
                    changes,
                    expected={"is_finalized": False}
                )
            except FlushError:
                staged_finalizations_total.labels(result='store_error').inc()
                raise

            session.state_machine.finalize(reason="finalize")
            session.is_finalized = True
            session.stage_items.freeze()
            session.touch()
            self.registry.discard(session.session_order_id)

            staged_finalizations_total.labels(result='success').inc()
            staged_order_value.observe(order.total_amount)
            stage_transitions_total.labels(
                from_stage=left_stage.value,
                to_stage=OrderStage.FINALIZED.value
            ).inc()

            logger.info(
                "staged_order_finalized",
                order_id=order.id,
                order_number=order.order_number,
                total=order.total_amount,
                from_stage=left_stage.value
            )

            return order

    async def update_committed_item(
        self,
        session: StagedOrderSession,
        order_item_id: str,
        quantity: int
    ) -> Order:
        """
        Change the quantity of an already persisted item (<= 0 deletes it).

        Raises:
            ItemNotFoundError: Item is not part of this order
            AlreadyFinalizedError: Order finalized
            PersistenceError: Store failure
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise LedgerError(f"Quantity must be an integer: {quantity!r}")

        async with session.lock:
            self._ensure_open(session)
            await self._load_open_order(session)

            try:
                items = await self.store.list_order_items(session.session_order_id)
            except StoreError as e:
                raise PersistenceError(f"Could not load order items: {e.message}") from e

            item = next((i for i in items if i.id == order_item_id), None)
            if item is None:
                raise ItemNotFoundError(
                    f"Item {order_item_id} is not part of order {session.order_number}"
                )

            if quantity > session.stage_items.max_quantity_per_item:
                raise LedgerError(
                    f"Max quantity exceeded: {quantity} > {session.stage_items.max_quantity_per_item}"
                )

            try:
                if quantity <= 0:
                    await self.store.delete_order_item(item.id)
                else:
                    await self.store.update_order_item(item.id, {
                        "quantity": quantity,
                        "total_price": round(item.unit_price * quantity, 2),
                    })
            except StoreError as e:
                raise PersistenceError(f"Could not update item {item.id}: {e.message}") from e

            order = await self._write_totals(session, {}, expected={"is_finalized": False})
            session.touch()

            logger.info(
                "committed_item_updated",
                order_id=session.session_order_id,
                item_id=item.id,
                quantity=quantity
            )

            return order

    # ========================================================================
    # RECLAMATION
    # ========================================================================

    async def reclaim_abandoned_sessions(self, max_age_hours: Optional[float] = None) -> List[str]:
        """
        Cancel staged orders nobody touched for `max_age_hours`.

        Returns:
            Ids of cancelled orders
        """
        hours = max_age_hours if max_age_hours is not None else self.settings.abandoned_session_hours
        cutoff = _utc_now() - timedelta(hours=hours)

        try:
            stale = await self.store.list_stale_staged_orders(cutoff)
        except StoreError as e:
            raise PersistenceError(f"Could not scan staged orders: {e.message}") from e

        reclaimed = []
        for order in stale:
            session = self.registry.get(order.id)
            if session is not None and (session.is_busy or session.idle_seconds() < hours * 3600):
                continue

            try:
                cancelled = await self.store.update_order(
                    order.id,
                    {"status": KitchenStatus.CANCELLED},
                    expected={"is_finalized": False, "status": order.status}
                )
                if cancelled is None:
                    continue

                if order.table_id:
                    await self.store.set_table_status(order.table_id, TableStatus.AVAILABLE)

            except StoreError as e:
                logger.error("abandoned_session_reclaim_failed", order_id=order.id, error=str(e))
                continue

            self.registry.discard(order.id)
            reclaimed.append(order.id)
            abandoned_sessions_reclaimed_total.inc()

            logger.info(
                "abandoned_session_reclaimed",
                order_id=order.id,
                order_number=order.order_number,
                table_id=order.table_id,
                last_updated=order.updated_at
            )

        return reclaimed

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _ensure_editable(self, session: StagedOrderSession):
        if session.stage_items.is_frozen:
            raise FrozenLedgerError(
                f"Order {session.order_number} is finalized"
            )
        if session.is_busy:
            raise SessionBusyError(
                f"Order {session.order_number} is being saved, try again"
            )

    def _composable_stage(self, session: StagedOrderSession, stage) -> OrderStage:
        self._ensure_editable(session)
        stage = parse_stage(stage)
        if stage != session.current_stage:
            raise StageMismatchError(
                f"Stage {stage.value} is not active ({session.current_stage.value})"
            )
        return stage

    def _ensure_open(self, session: StagedOrderSession):
        if session.is_finalized:
            raise AlreadyFinalizedError(
                f"Order {session.order_number} is already finalized"
            )

    async def _ensure_table_free(self, table_id: str):
        cached = self.registry.for_table(table_id)
        if cached is not None and not cached.is_finalized:
            staged_sessions_total.labels(result='table_conflict').inc()
            raise TableSessionConflictError(
                f"Table {table_id} already has open staged order {cached.order_number}"
            )

        try:
            existing = await self.store.find_open_staged_order(table_id)
        except StoreError as e:
            raise PersistenceError(f"Could not check table {table_id}: {e.message}") from e

        if existing is not None:
            staged_sessions_total.labels(result='table_conflict').inc()
            raise TableSessionConflictError(
                f"Table {table_id} already has open staged order {existing.order_number}"
            )

    async def _cancel_shell(self, order: Order):
        """Compensate a shell whose table could not be occupied."""
        try:
            await self.store.update_order(order.id, {"status": KitchenStatus.CANCELLED})
            logger.info("staged_shell_cancelled", order_id=order.id)
        except StoreError as e:
            logger.error(
                "staged_shell_cancel_failed",
                order_id=order.id,
                error=str(e)
            )

    async def _load_open_order(self, session: StagedOrderSession) -> Order:
        """
        Re-read the order and check it still accepts writes for this session.
        """
        try:
            order = await self.store.get_order(session.session_order_id)
        except StoreError as e:
            raise PersistenceError(f"Could not load order {session.order_number}: {e.message}") from e

        if order.is_finalized:
            self._mark_finalized(session)
            raise AlreadyFinalizedError(f"Order {order.order_number} is already finalized")

        if order.status == KitchenStatus.CANCELLED:
            raise InvalidTransitionError(f"Order {order.order_number} was cancelled")

        if order.current_stage is not None and order.current_stage != session.current_stage:
            raise InvalidTransitionError(
                f"Order {order.order_number} is at {order.current_stage.value}, "
                f"session is at {session.current_stage.value}"
            )

        return order

    async def _flush_stage(self, session: StagedOrderSession, stage: OrderStage) -> List[OrderItem]:
        """
        Persist one stage's ledger as order items, then drop it from the ledger.
        """
        entries = session.stage_items.entries(stage)
        if not entries:
            return []

        rows = [
            {
                "id": entry.line_id,
                "menu_item_id": entry.menu_item_id,
                "name": entry.name,
                "quantity": entry.quantity,
                "unit_price": entry.price,
                "total_price": entry.line_total,
                "stage": stage,
                "special_instructions": entry.notes,
            }
            for entry in entries
        ]

        try:
            inserted = await self.store.insert_order_items(session.session_order_id, rows)
        except StoreError as e:
            stage_flushes_total.labels(stage=stage.value, result='failure').inc()
            logger.error(
                "stage_flush_failed",
                order_id=session.session_order_id,
                stage=stage.value,
                items=len(rows),
                error=str(e)
            )
            raise FlushError(f"Could not persist {stage.value} items: {e.message}") from e

        # Rows are keyed by line id, so a write that landed after a timeout is
        # overwritten, not duplicated, by the retry
        session.stage_items.clear_flushed(stage)

        stage_flushes_total.labels(stage=stage.value, result='success').inc()
        logger.info(
            "stage_flushed",
            order_id=session.session_order_id,
            stage=stage.value,
            items=len(inserted)
        )

        return inserted

    async def _compute_totals(self, order_id: str) -> Dict[str, float]:
        """Cumulative money fields over every persisted item."""
        items = await self.store.list_order_items(order_id)
        subtotal = round(sum(item.total_price for item in items), 2)
        tax_amount = round(subtotal * self.settings.tax_rate, 2)
        return {
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "total_amount": round(subtotal + tax_amount, 2),
        }

    async def _write_totals(
        self,
        session: StagedOrderSession,
        changes: Dict[str, Any],
        expected: Dict[str, Any]
    ) -> Order:
        """Recompute totals and write them with `changes` as one conditional update."""
        try:
            totals = await self._compute_totals(session.session_order_id)
            updated = await self.store.update_order(
                session.session_order_id,
                {**totals, **changes},
                expected=expected
            )
        except StoreError as e:
            logger.error(
                "order_update_failed",
                order_id=session.session_order_id,
                error=str(e)
            )
            raise FlushError(f"Could not update order {session.order_number}: {e.message}") from e

        if updated is None:
            await self._raise_conflict(session)

        return updated

    async def _raise_conflict(self, session: StagedOrderSession):
        """A conditional write matched nothing: report why."""
        try:
            order = await self.store.get_order(session.session_order_id)
        except StoreError as e:
            raise PersistenceError(f"Could not reload order {session.order_number}: {e.message}") from e

        if order.is_finalized:
            self._mark_finalized(session)
            raise AlreadyFinalizedError(f"Order {order.order_number} is already finalized")

        stage = order.current_stage.value if order.current_stage else None
        raise InvalidTransitionError(
            f"Order {order.order_number} changed concurrently (stage={stage})"
        )

    def _mark_finalized(self, session: StagedOrderSession):
        """Bring a stale session in line with a finalized order."""
        if session.is_finalized:
            return
        if not session.state_machine.is_terminal():
            session.state_machine.finalize(reason="finalized_elsewhere")
        session.is_finalized = True
        session.stage_items.freeze()
        self.registry.discard(session.session_order_id)


# ============================================================================
# BACKGROUND RECLAMATION
# ============================================================================

class SessionReaper:
    """Periodically cancels abandoned staged orders."""

    def __init__(
        self,
        controller: StagedOrderController,
        interval_seconds: float = 300,
        max_age_hours: Optional[float] = None
    ):
        self.controller = controller
        self.interval_seconds = interval_seconds
        self.max_age_hours = max_age_hours
        self.task: Optional[asyncio.Task] = None
        self.is_running = False
        self.reclaimed_count = 0

    async def start(self):
        """Start background reclamation."""
        if self.is_running:
            return

        self.is_running = True
        self.task = asyncio.create_task(self._loop())
        logger.info("session_reaper_started", interval=self.interval_seconds)

    async def stop(self):
        """Stop background reclamation."""
        if not self.is_running:
            return

        self.is_running = False

        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("session_reaper_stopped", reclaimed=self.reclaimed_count)

    async def run_once(self) -> List[str]:
        reclaimed = await self.controller.reclaim_abandoned_sessions(self.max_age_hours)
        self.reclaimed_count += len(reclaimed)
        return reclaimed

    async def _loop(self):
        while self.is_running:
            await asyncio.sleep(self.interval_seconds)

            try:
                await self.run_once()
            except StagedOrderError as e:
                logger.error("session_reaper_error", error=str(e))
