"""
Staged Order HTTP API
=====================
FastAPI boundary for staged (course-by-course) ordering and the kitchen
views that consume it.

NO BUSINESS LOGIC - request validation, error mapping and wiring only.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, List
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
import uvicorn

from config import get_config
from kitchen import (
    KitchenVisibilityError,
    list_kitchen_orders,
    update_order_status,
)
from ledger import LedgerError
from order_store import OrderStore, KitchenStatus, StoreError, RecordNotFoundError
from staged_order import (
    StagedOrderController,
    StagedOrderSession,
    StagedOrderError,
    InvalidTableError,
    TableSessionConflictError,
    PersistenceError,
    SessionNotFoundError,
    SessionBusyError,
    ItemNotFoundError,
    SessionReaper,
)
from stage_state import InvalidTransitionError, parse_stage


logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class SessionCreate(BaseModel):
    table_id: str


class StageItemIn(BaseModel):
    menu_item_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    image_url: Optional[str] = None
    notes: Optional[str] = None


class QuantityUpdate(BaseModel):
    quantity: int


class StageItemsCommit(BaseModel):
    items: List[StageItemIn] = []
    stage: Optional[str] = None


class FinalizeRequest(BaseModel):
    payment_method: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


# ============================================================================
# ERROR MAPPING
# ============================================================================

def _status_for(exc: Exception) -> int:
    if isinstance(exc, TableSessionConflictError):
        return 409
    if isinstance(exc, (InvalidTableError, SessionNotFoundError, ItemNotFoundError, RecordNotFoundError)):
        return 404
    if isinstance(exc, (InvalidTransitionError, SessionBusyError)):
        return 409
    if isinstance(exc, KitchenVisibilityError):
        return 409
    if isinstance(exc, (LedgerError, ValueError)):
        return 400
    if isinstance(exc, (PersistenceError, StoreError)):
        return 502
    return 500


def _session_summary(session: StagedOrderSession, status: str = KitchenStatus.PENDING.value) -> dict:
    return {
        "session_order_id": session.session_order_id,
        "order_number": session.order_number,
        "table_id": session.table_id,
        "stage": session.current_stage.value,
        "status": status,
    }


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    controller: Optional[StagedOrderController] = None,
    reaper: Optional[SessionReaper] = None
) -> FastAPI:
    """
    Build the API.

    Without a controller, one is wired from environment configuration.
    """
    cors_origins = ["*"]

    if controller is None:
        config = get_config()
        store = OrderStore(timeout=config.supabase.timeout)
        controller = StagedOrderController(store, settings=config.staging)
        cors_origins = config.server.cors_origins

        if reaper is None and config.features.enable_session_reaper:
            reaper = SessionReaper(
                controller,
                interval_seconds=config.staging.reaper_interval_seconds
            )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if reaper is not None:
            await reaper.start()
        yield
        if reaper is not None:
            await reaper.stop()

    app = FastAPI(title="Staged Order API", lifespan=lifespan)
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StagedOrderError)
    @app.exception_handler(InvalidTransitionError)
    @app.exception_handler(LedgerError)
    @app.exception_handler(StoreError)
    @app.exception_handler(KitchenVisibilityError)
    @app.exception_handler(ValueError)
    async def domain_error_handler(request: Request, exc: Exception):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": str(exc), "type": type(exc).__name__}
        )

    async def _session(order_id: str) -> StagedOrderSession:
        return await controller.resume_session(order_id)

    # ------------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy" if controller.store.is_healthy() else "degraded",
            "open_sessions": len(controller.registry),
            "store": controller.store.get_stats(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Staged sessions
    # ------------------------------------------------------------------------

    @app.post("/api/orders/session", status_code=201)
    async def create_session(payload: SessionCreate):
        session = await controller.create_session(payload.table_id)
        return _session_summary(session)

    @app.get("/api/orders/session/{order_id}")
    async def get_session(order_id: str):
        session = await _session(order_id)
        return session.to_dict()

    @app.post("/api/orders/session/{order_id}/items", status_code=201)
    async def add_item(order_id: str, item: StageItemIn, stage: Optional[str] = None):
        session = await _session(order_id)
        entry = controller.add_item(session, stage or session.current_stage, item.model_dump())
        return {"stage": session.current_stage.value, "item": entry.to_dict()}

    @app.patch("/api/orders/session/{order_id}/items/{menu_item_id}")
    async def set_item_quantity(order_id: str, menu_item_id: str, payload: QuantityUpdate,
                                stage: Optional[str] = None):
        session = await _session(order_id)
        changed = controller.set_quantity(
            session, stage or session.current_stage, menu_item_id, payload.quantity
        )
        return {"changed": changed, "session": session.to_dict()}

    @app.delete("/api/orders/session/{order_id}/items/{menu_item_id}")
    async def remove_item(order_id: str, menu_item_id: str, stage: Optional[str] = None):
        session = await _session(order_id)
        removed = controller.remove_item(session, stage or session.current_stage, menu_item_id)
        return {"removed": removed, "session": session.to_dict()}

    @app.delete("/api/orders/session/{order_id}/stages/{stage}")
    async def clear_stage(order_id: str, stage: str):
        session = await _session(order_id)
        cleared = controller.clear_stage(session, parse_stage(stage))
        return {"cleared": cleared, "session": session.to_dict()}

    @app.post("/api/orders/session/{order_id}/stage-items")
    async def commit_stage_items(order_id: str, payload: StageItemsCommit):
        session = await _session(order_id)
        inserted = await controller.commit_stage_items(
            session,
            items=[item.model_dump() for item in payload.items],
            stage=payload.stage
        )
        return {
            "stage": session.current_stage.value,
            "items": [item.to_dict() for item in inserted],
        }

    @app.patch("/api/orders/session/{order_id}/order-items/{order_item_id}")
    async def update_committed_item(order_id: str, order_item_id: str, payload: QuantityUpdate):
        session = await _session(order_id)
        order = await controller.update_committed_item(session, order_item_id, payload.quantity)
        return {"order": order.to_dict()}

    @app.post("/api/orders/session/{order_id}/advance")
    async def advance_stage(order_id: str):
        session = await _session(order_id)
        await controller.advance_stage(session)
        return session.to_dict()

    @app.post("/api/orders/session/{order_id}/retreat")
    async def retreat_stage(order_id: str):
        session = await _session(order_id)
        await controller.retreat_stage(session)
        return session.to_dict()

    @app.post("/api/orders/session/{order_id}/finalize")
    async def finalize(order_id: str, payload: Optional[FinalizeRequest] = None):
        session = await _session(order_id)
        order = await controller.finalize(
            session,
            payment_method=payload.payment_method if payload else None
        )
        # The order is committed at this point; a failed read-back must not
        # turn it into an error response
        try:
            items = [item.to_dict() for item in await controller.store.list_order_items(order.id)]
        except StoreError as e:
            logger.warning(f"Finalized order {order.order_number}, items unavailable: {e}")
            items = None

        return {
            "message": "Order finalized",
            "order": {**order.to_dict(), "items": items},
            "items_unavailable": items is None,
        }

    # ------------------------------------------------------------------------
    # Kitchen
    # ------------------------------------------------------------------------

    @app.get("/api/kitchen/orders")
    async def kitchen_orders(status: Optional[List[str]] = Query(None), limit: int = 50):
        try:
            statuses = [KitchenStatus(value) for value in status] if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status filter: {status}")
        orders = await list_kitchen_orders(controller.store, statuses=statuses, limit=limit)
        return [order.to_dict() for order in orders]

    @app.patch("/api/orders/{order_id}/status")
    async def change_status(order_id: str, payload: StatusUpdate):
        order = await update_order_status(controller.store, order_id, payload.status)
        return {"message": "Order status updated successfully", "order": order.to_dict()}

    return app


# ============================================================================
# ENTRY POINT
# ============================================================================

def main():
    config = get_config()

    logging.basicConfig(
        level=config.server.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    uvicorn.run(
        "api:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower()
    )


if __name__ == "__main__":
    main()
