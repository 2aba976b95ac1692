"""
Quality-Control Alert Monitor

Real-time monitoring of in-flight quality tests and teflon expiry, with
alerts delivered over WebSocket, Web Push and a manager live feed (SSE).
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .config import get_settings
from .logging_setup import configure_logging
from .models import (
    FinishTestRequest,
    LiveFeedEventRequest,
    ManualNotificationRequest,
    NotificationRecord,
    OperationAlertRequest,
    PushSubscriptionRequest,
    Role,
    UnreadCount,
    User,
    format_ts,
)
from .presence import PresenceRegistry, send
from .service import NotificationService
from .store import MemoryStore, load_seed

logger = logging.getLogger(__name__)

WS_RECEIVE_TIMEOUT = 30
MANAGER_ROLES = (Role.MANAGER, Role.ADMIN)
LEADER_ROLES = (Role.LEADER, Role.MANAGER, Role.ADMIN)

# Global service graph
settings = get_settings()
store = MemoryStore()
presence = PresenceRegistry()
service = NotificationService(store, presence, settings)


# ============================================================
# FASTAPI APP
# ============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.seed_file is not None:
        await load_seed(store, settings.seed_file)
    await service.start()
    logger.info("Quality-Control Alert Monitor started")
    yield
    await service.stop()
    logger.info("Quality-Control Alert Monitor stopped")


app = FastAPI(
    title="Quality-Control Alert Monitor",
    description="Test deadline monitoring and multi-channel alert delivery",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================
# IDENTITY
# ============================================================


async def current_user(x_user_id: str | None = Header(None)) -> User:
    """Resolve the caller from the ``X-User-Id`` header set by the auth proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = await store.get_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def require_manager(user: User = Depends(current_user)) -> User:
    if user.role not in MANAGER_ROLES:
        raise HTTPException(status_code=403, detail="Only managers can access this resource")
    return user


async def require_leader(user: User = Depends(current_user)) -> User:
    if user.role not in LEADER_ROLES:
        raise HTTPException(status_code=403, detail="Only leaders and managers can do this")
    return user


# ============================================================
# HEALTH CHECK
# ============================================================


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timers_active": len(service.timers),
        "live_feed_connections": len(service.live_feed.connections),
        "online_users": len(presence.online_users()),
    }


# ============================================================
# TEST LIFECYCLE HOOKS
# ============================================================


@app.post("/tests/{test_id}/started")
async def test_started(test_id: str):
    """Start deadline monitoring for a test."""
    test = await service.on_test_started(test_id)
    if test is None:
        raise HTTPException(status_code=404, detail="Test not found")

    handle = service.timers.get_handle(test_id)
    return {
        "test_id": test.id,
        "status": test.status,
        "monitoring": handle is not None,
        "deadline": format_ts(test.deadline(settings.default_expected_duration_minutes)),
    }


@app.post("/tests/{test_id}/finished")
async def test_finished(test_id: str, request: FinishTestRequest | None = None):
    """Stop deadline monitoring for a completed or failed test."""
    request = request or FinishTestRequest()
    test = await service.on_test_finished(test_id, request.status)
    if test is None:
        raise HTTPException(status_code=404, detail="Test not found")
    return {"test_id": test.id, "status": test.status, "monitoring": False}


# ============================================================
# NOTIFICATIONS
# ============================================================


@app.get("/notifications", response_model=list[NotificationRecord])
async def list_notifications(
    unread_only: bool = Query(False, description="Only unread, active notifications"),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(current_user),
):
    return await service.get_user_notifications(user.id, unread_only, limit)


@app.get("/notifications/unread", response_model=list[NotificationRecord])
async def list_unread(user: User = Depends(current_user)):
    return await service.get_user_notifications(user.id, unread_only=True)


@app.get("/notifications/unread/count", response_model=UnreadCount)
async def unread_count(user: User = Depends(current_user)):
    return UnreadCount(count=await service.unread_count(user.id))


@app.patch("/notifications/read-all")
async def mark_all_read(user: User = Depends(current_user)):
    updated = await service.mark_all_as_read(user.id)
    return {"success": True, "updated": updated}


@app.patch("/notifications/{notification_id}/read")
async def mark_read(notification_id: str, user: User = Depends(current_user)):
    notification = await service.mark_notification_as_read(notification_id, user.id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@app.patch("/notifications/{notification_id}/resolve")
async def resolve(notification_id: str, user: User = Depends(require_leader)):
    notification = await service.resolve_notification(notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@app.post("/notifications", response_model=NotificationRecord, status_code=201)
async def create_notification(
    request: ManualNotificationRequest, user: User = Depends(require_manager)
):
    """Create a manual alert addressed to the given roles."""
    return await service.create_manual_notification(
        request.type,
        request.title,
        request.message,
        priority=request.priority,
        recipient_roles=request.recipient_roles,
    )


@app.post("/notifications/operation-without-test")
async def operation_without_test(
    request: OperationAlertRequest, user: User = Depends(current_user)
):
    """Raise a quality alert for a machine running without a quality test."""
    notification = await service.create_operation_without_test_alert(request)
    return {"success": True, "notification": notification}


@app.post("/notifications/subscribe")
async def subscribe_push(request: PushSubscriptionRequest, user: User = Depends(current_user)):
    await service.register_push_subscription(user.id, request.subscription)
    return {"success": True}


@app.delete("/notifications/subscribe")
async def unsubscribe_push(user: User = Depends(current_user)):
    await service.remove_push_subscription(user.id)
    return {"success": True}


# ============================================================
# LIVE FEED (SSE)
# ============================================================


@app.get("/sse/monitor")
async def live_feed_monitor(user: User = Depends(require_manager)):
    """
    Server-Sent Events stream for managers.

    Events:
    - initial: Full system status when connected
    - update: Full system status every few seconds
    - heartbeat: Keep-alive timestamp
    - event: Immediate alerts (overdue tests, expired parts, ...)
    """
    connection_id = f"manager_{user.id}_{uuid.uuid4().hex[:8]}"
    connection = await service.live_feed.subscribe(
        connection_id, user.id, user.name or user.username
    )

    async def event_stream():
        try:
            async for frame in connection.stream():
                yield frame
        finally:
            service.live_feed.unsubscribe(connection_id, connection)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/sse/stats")
async def live_feed_stats(user: User = Depends(require_manager)):
    return service.live_feed.stats()


@app.post("/sse/notify")
async def live_feed_notify(request: LiveFeedEventRequest, user: User = Depends(require_manager)):
    """Push an event to every live feed subscriber right away."""
    delivered = service.live_feed.notify_event(request.event_type, request.data)
    return {"success": True, "delivered": delivered}


# ============================================================
# WEBSOCKET ENDPOINT
# ============================================================


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket connection for real-time notifications.

    Messages accepted:
    - authenticate {user_id}: Register presence, receive unread notifications
    - mark_notification_read {notification_id}
    - get_notifications {unread_only}
    - ping

    Messages sent:
    - connected, authenticated, unread_notifications, notifications_list
    - notification: A new alert addressed to this user
    - notification_read: A notification was marked read
    - keepalive, pong, error
    """
    client_id = f"client_{uuid.uuid4().hex[:8]}"
    await websocket.accept()
    await websocket.send_json({"type": "connected", "client_id": client_id})

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_json(), timeout=WS_RECEIVE_TIMEOUT
                )
                kind = data.get("type")

                if kind == "ping":
                    await websocket.send_json({"type": "pong"})

                elif kind == "authenticate":
                    user = await store.get_user(str(data.get("user_id") or ""))
                    if user is None:
                        await websocket.send_json({"type": "error", "message": "Unknown user"})
                        continue
                    presence.register(user.id, client_id, websocket)
                    await send(websocket, "authenticated", {"user_id": user.id})
                    unread = await service.get_user_notifications(user.id, unread_only=True)
                    await send(
                        websocket,
                        "unread_notifications",
                        [n.model_dump(mode="json") for n in unread],
                    )

                elif kind in ("mark_notification_read", "get_notifications"):
                    user_id = presence.user_for(client_id)
                    if user_id is None:
                        await websocket.send_json({"type": "error", "message": "Not authenticated"})
                        continue
                    if kind == "mark_notification_read":
                        notification_id = data.get("notification_id")
                        if notification_id:
                            await service.mark_notification_as_read(notification_id, user_id)
                    else:
                        notifications = await service.get_user_notifications(
                            user_id, unread_only=bool(data.get("unread_only"))
                        )
                        await send(
                            websocket,
                            "notifications_list",
                            [n.model_dump(mode="json") for n in notifications],
                        )

                else:
                    await websocket.send_json(
                        {"type": "error", "message": f"Unknown message type: {kind}"}
                    )

            except TimeoutError:
                await websocket.send_json({"type": "keepalive"})

    except WebSocketDisconnect:
        presence.unregister(client_id)
    except Exception:
        logger.warning("WebSocket error for client %s", client_id)
        presence.unregister(client_id)


# ============================================================
# MAIN
# ============================================================


def main():
    import uvicorn

    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
