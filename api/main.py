"""
FastAPI Application — REST API for scheduling outbound messages.

Provides:
- Schedule / list / inspect / cancel endpoints, scoped to the calling user
- Session inspection for the caller and administrative revocation
- Health report with scheduler, store, session and worker state
- Lifespan that starts the delivery scheduler and closes sessions on exit

The caller's identity is set by the fronting auth layer in X-User-Id.

Run with: uvicorn --factory api.main:create_app
"""
from __future__ import annotations

import hmac
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from channels.base import DeliveryWorker
from channels.factory import create_delivery_stack
from channels.sessions import SessionManager
from config.logging_setup import configure_logging
from config.settings import Settings, get_settings
from core.service import MessageService
from database.store_base import BaseMessageStore
from database.store_factory import create_store
from models.errors import InvalidTransitionError, MessageNotFoundError, ValidationError
from models.schemas import ScheduledMessage, SessionState
from scheduler.loop import DeliveryScheduler

logger = structlog.get_logger()

router = APIRouter()


# ──────────────────────────────────────────────────────────────
#  Request context
# ──────────────────────────────────────────────────────────────

def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id.strip()


def _service(request: Request) -> MessageService:
    return request.app.state.service


def _message_view(message: ScheduledMessage) -> dict[str, Any]:
    return message.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    state = request.app.state
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler": state.scheduler.stats(),
        "store": await state.store.stats(),
        "sessions": len(state.sessions),
        "worker": await state.worker.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/messages/schedule", status_code=201)
async def schedule_message(
    request: Request,
    payload: dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
):
    try:
        message = await _service(request).schedule(user_id, payload)
    except ValidationError as e:
        raise HTTPException(400, {"message": str(e), "errors": e.errors})
    return {
        "message": "Message scheduled",
        "id": message.id,
        "status": message.status.value,
    }


@router.get("/api/v1/messages")
async def list_messages(request: Request, user_id: str = Depends(current_user)):
    messages = await _service(request).list_messages(user_id)
    return {"messages": [_message_view(m) for m in messages]}


@router.get("/api/v1/messages/{message_id}")
async def get_message(message_id: str, request: Request, user_id: str = Depends(current_user)):
    try:
        message = await _service(request).get_message(user_id, message_id)
    except MessageNotFoundError:
        raise HTTPException(404, "Message not found")
    return _message_view(message)


@router.post("/api/v1/messages/{message_id}/cancel")
async def cancel_message(message_id: str, request: Request, user_id: str = Depends(current_user)):
    try:
        message = await _service(request).cancel(user_id, message_id)
    except MessageNotFoundError:
        raise HTTPException(404, "Message not found")
    except InvalidTransitionError as e:
        raise HTTPException(
            409, f"Cannot cancel a message with status: {e.from_status.value}",
        )
    return {
        "message": "Message canceled successfully",
        "id": message.id,
        "status": message.status.value,
    }


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/sessions/me")
async def my_session(request: Request, user_id: str = Depends(current_user)):
    info = request.app.state.sessions.get(user_id)
    if info is None:
        return {"user_id": user_id, "state": SessionState.UNINITIALIZED.value}
    return info.model_dump(mode="json")


@router.post("/api/v1/admin/sessions/{user_id}/revoke")
async def revoke_session(
    user_id: str,
    request: Request,
    x_admin_token: Optional[str] = Header(None),
):
    expected = request.app.state.settings.admin_token or ""
    unset = not expected or expected == "change-me" or expected.startswith("${")
    if unset or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(403, "Admin token required")

    revoked = await request.app.state.sessions.revoke(user_id)
    if not revoked:
        raise HTTPException(404, "Session not found")
    return {"user_id": user_id, "state": SessionState.CLOSED.value}


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    store: BaseMessageStore = None,
    sessions: SessionManager = None,
    worker: DeliveryWorker = None,
    scheduler: DeliveryScheduler = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Wire store, session pool, worker, scheduler and service into an app.
    Anything not passed in is built from settings.
    """
    settings = settings or get_settings()

    if store is None:
        store = create_store({
            "store_backend": settings.database.store_backend,
            "store_file_dir": settings.database.store_file_dir,
        })
    if worker is None:
        sessions, worker = create_delivery_stack(settings)
    elif sessions is None:
        sessions = worker.sessions
    if scheduler is None:
        scheduler = DeliveryScheduler(
            store,
            worker,
            poll_interval_s=settings.scheduler.poll_interval_seconds,
            max_concurrent_deliveries=settings.scheduler.max_concurrent_deliveries,
            delivery_timeout_s=settings.scheduler.delivery_timeout_seconds,
            eager_dispatch=settings.scheduler.eager_dispatch,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, json=settings.logging.json)
        if start_scheduler:
            await scheduler.start()
        logger.info("scheduled_sender_started",
                    app=settings.app_name,
                    driver=worker.name,
                    store=type(store).__name__)
        yield

        await scheduler.stop()
        await sessions.shutdown()
        logger.info("scheduled_sender_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Schedule outbound messages for automated delivery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions
    app.state.worker = worker
    app.state.scheduler = scheduler
    app.state.service = MessageService(store, scheduler)

    app.include_router(router)
    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
