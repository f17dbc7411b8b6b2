# supportchat/main.py
"""
FastAPI application for the live chat core.

- REST API under /api (rooms, queue, attendants, business hours)
- WebSocket push per tenant (/ws/{tenant_id}) and per room (/ws/{tenant_id}/rooms/{room_id})
- Rule scheduler started in the lifespan (rules when SCHEDULER_ENABLED, always relaying standalone ticks)
- ChatError subclasses mapped to HTTP status codes; store outages to 503
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from supportchat.core.config import (
    ALLOWED_ORIGINS, JWT_SECRET_KEY, FANOUT_BUFFER_SIZE, SCHEDULER_ENABLED, SCHEDULER_INTERVAL_SECONDS,
)
from supportchat.core.errors import ChatError
from supportchat.core.logging_config import setup_logging
from supportchat.db.session import get_db, init_db, test_db_connection
from supportchat.api.deps import identify_staff
from supportchat.api.v1.router import api_router
from supportchat.services import get_chat_service, get_realtime_hub
from supportchat.services.scheduler import RuleScheduler
from supportchat.ws.manager import AUDIENCE_STAFF, AUDIENCE_VISITOR, room_channel, tenant_channel

setup_logging("supportchat")
log = logging.getLogger("supportchat")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("=" * 80)
    log.info("🚀 Live chat core starting")
    log.info("=" * 80)

    # Initialize database
    try:
        init_db()
        if test_db_connection():
            log.info("✅ Database initialized")
    except Exception as e:
        log.error(f"❌ Database error: {e}")

    # Without SCHEDULER_ENABLED a standalone scheduler evaluates the rules;
    # this process still relays its changes to the websocket consoles
    scheduler = RuleScheduler(
        hub=get_realtime_hub(),
        interval=SCHEDULER_INTERVAL_SECONDS,
        evaluate_rules=SCHEDULER_ENABLED,
    )
    tasks = [asyncio.create_task(scheduler.run())]

    yield

    scheduler.stop()
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    log.info("👋 Live chat core stopped")


# FastAPI app
app = FastAPI(
    title="Support Chat",
    description="Multi-tenant live chat session core",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Tenant-Id", "X-User-Id", "Authorization", "Content-Type"],
    max_age=86400,
)

app.include_router(api_router, prefix="/api")


# ────────────────────────────────────────────
# Public routes
# ────────────────────────────────────────────

@app.get("/healthz", tags=["System"])
def health():
    """Health check endpoint"""
    db_ok = test_db_connection()
    hub = get_realtime_hub()

    return {
        "status": "ok" if db_ok else "degraded",
        "database_ok": db_ok,
        "jwt_enabled": bool(JWT_SECRET_KEY),
        "scheduler_enabled": SCHEDULER_ENABLED,
        "fanout_buffer_size": FANOUT_BUFFER_SIZE,
        "websocket_connections": hub.connections.connection_count()
    }


# ────────────────────────────────────────────
# WebSocket Endpoints
# ────────────────────────────────────────────

# Close codes sent before accept
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404


async def _serve(websocket: WebSocket, channel: str, audience: str) -> None:
    """Register the socket, announce the current seq, then keep it alive with ping/pong"""
    hub = get_realtime_hub()
    try:
        await hub.connections.connect(channel, websocket, audience)
        # Client must resync from REST; seq tells it where the stream starts
        await websocket.send_json({"event": "subscribed", "channel": channel, "seq": hub.last_seq(channel, audience)})

        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
                    log.debug(f"🏓 Pong sent on {channel}")
            except WebSocketDisconnect:
                log.info(f"🔌 WebSocket disconnected: {channel}")
                break
            except Exception as e:
                log.error(f"❌ WebSocket error on {channel}: {e}")
                break
    except Exception as e:
        log.error(f"❌ WebSocket connection error on {channel}: {e}")
    finally:
        hub.connections.disconnect(channel, websocket)
        log.info(f"🔌 WebSocket cleanup complete: {channel} (Remaining: {hub.connections.connection_count(channel)})")


def _bearer(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    """?token= for browsers, Authorization header for other clients"""
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def _staff_close_code(websocket: WebSocket, tenant_id: str, token: Optional[str]) -> Optional[int]:
    """None when the caller is staff of ``tenant_id``, otherwise the close code"""
    try:
        user = identify_staff(_bearer(websocket, token), websocket.headers)
    except HTTPException as e:
        return WS_FORBIDDEN if e.status_code == 403 else WS_UNAUTHORIZED
    if user["tenant_id"] != tenant_id:
        return WS_FORBIDDEN
    return None


async def _reject(websocket: WebSocket, code: int) -> None:
    log.warning(f"⛔ WebSocket rejected ({code}): {websocket.url.path}")
    await websocket.close(code=code)


@app.websocket("/ws/{tenant_id}")
async def tenant_websocket(websocket: WebSocket, tenant_id: str, token: Optional[str] = None):
    """Room inserts/updates and activity hints for a tenant's consoles (staff only)"""
    code = _staff_close_code(websocket, tenant_id, token)
    if code is not None:
        await _reject(websocket, code)
        return
    await _serve(websocket, tenant_channel(tenant_id), AUDIENCE_STAFF)


@app.websocket("/ws/{tenant_id}/rooms/{room_id}")
async def room_websocket(
    websocket: WebSocket,
    tenant_id: str,
    room_id: int,
    token: Optional[str] = None,
    visitor_token: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Message inserts for one room.

    With ``visitor_token`` the socket joins as the room's visitor and never
    receives internal notes. Without it the caller must be staff of the tenant.
    Either way the room must belong to ``tenant_id``.
    """
    service = get_chat_service()
    if visitor_token:
        audience = AUDIENCE_VISITOR
    else:
        code = _staff_close_code(websocket, tenant_id, token)
        if code is not None:
            await _reject(websocket, code)
            return
        audience = AUDIENCE_STAFF

    try:
        if audience == AUDIENCE_VISITOR:
            service.get_visitor_room(db, tenant_id, room_id, visitor_token)
        else:
            service.get_room(db, tenant_id, room_id)
    except ChatError:
        await _reject(websocket, WS_NOT_FOUND)
        return
    finally:
        # release the connection before the long-lived socket loop
        db.close()

    await _serve(websocket, room_channel(room_id), audience)


# ────────────────────────────────────────────
# Exception Handlers
# ────────────────────────────────────────────

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Expected outcomes of concurrent operation (conflict, invalid transition, capacity)"""
    log.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "invalid_request", "detail": str(exc)})


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError):
    log.error(f"❌ Store unavailable on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"error": "store_unavailable", "detail": "Database unavailable, retry later"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8100)
