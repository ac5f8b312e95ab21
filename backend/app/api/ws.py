"""WebSocket endpoint streaming change events to client sessions."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.orm import Session, sessionmaker

from safeyou.realtime.bus import ChangeSubscription, ReplayUnavailableError, SubscriptionOverflow
from safeyou.realtime.events import ChangeEntity
from safeyou.realtime.managers import get_change_bus, get_connection_tracker

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.core.errors import ChatError
from app.database import get_session_factory
from app.services.changes import event_visible_to
from app.services.chat import ChatService

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")

_START_PARAMS: dict[ChangeEntity, str] = {
    ChangeEntity.MESSAGE: "message_from",
    ChangeEntity.USER: "user_from",
}


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*, returning ``False`` once it is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "detail": detail})


async def _resolve_user_id(websocket: WebSocket, session_factory: sessionmaker[Session]) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    db = session_factory()
    try:
        return get_user_from_token(token, db).id
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None
    finally:
        db.close()


def _parse_start_sequences(websocket: WebSocket) -> dict[ChangeEntity, int | None]:
    starts: dict[ChangeEntity, int | None] = {}
    for entity, param in _START_PARAMS.items():
        raw = websocket.query_params.get(param)
        if raw in (None, ""):
            starts[entity] = None
            continue
        value = int(raw)
        if value < 0:
            raise ValueError(f"{param} must not be negative")
        starts[entity] = value
    return starts


async def _pump(websocket: WebSocket, subscription: ChangeSubscription, user_id: str) -> None:
    try:
        async for event in subscription:
            if not event_visible_to(event, user_id):
                continue
            if not await safe_send_json(websocket, {"type": "change", "event": event.to_dict()}):
                return
    except SubscriptionOverflow as exc:
        await safe_send_json(
            websocket,
            {"type": "overflow", "entity": exc.entity.value, "resume_from": exc.resume_from},
        )
        with contextlib.suppress(RuntimeError):
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Subscriber overflow")


async def _receive_loop(websocket: WebSocket, service: ChatService, user_id: str) -> None:
    async for raw_message in iter_keepalive_messages(
        websocket,
        websocket.receive_text,
        timeout_seconds=settings.websocket_keepalive_timeout_seconds,
        ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
    ):
        if not raw_message:
            continue
        if raw_message.strip().lower() == "ping":
            await safe_send_json(websocket, {"type": "pong"})
            continue
        try:
            payload = json.loads(raw_message)
        except json.JSONDecodeError:
            await _send_error(websocket, "Invalid payload")
            continue
        if not isinstance(payload, dict):
            await _send_error(websocket, "Invalid payload")
            continue

        message_type = payload.get("type")
        if message_type == "ping":
            await safe_send_json(websocket, {"type": "pong"})
        elif message_type == "pong":
            continue
        elif message_type == "heartbeat":
            try:
                await service.heartbeat(user_id)
            except ChatError as exc:
                await _send_error(websocket, exc.detail)
        else:
            await _send_error(websocket, "Unsupported message type")


async def _update_presence(service: ChatService, user_id: str, *, online: bool) -> None:
    try:
        if online:
            await service.set_online(user_id)
        else:
            await service.set_offline(user_id)
    except ChatError:
        logger.warning(
            "Failed to update presence for websocket session",
            extra={"user_id": user_id, "online": online},
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )


@router.websocket("/changes")
async def websocket_changes(
    websocket: WebSocket,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> None:
    """Stream user and message change events, optionally replaying from a sequence."""

    user_id = await _resolve_user_id(websocket, session_factory)
    if user_id is None:
        return

    try:
        starts = _parse_start_sequences(websocket)
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid start sequence")
        return

    await websocket.accept()

    service = ChatService(session_factory, settings=settings)
    bus = get_change_bus()
    subscriptions: list[ChangeSubscription] = []
    try:
        for entity, from_sequence in starts.items():
            subscriptions.append(
                await bus.subscribe(entity, from_sequence, history=service.load_change_history)
            )
    except (ReplayUnavailableError, ChatError) as exc:
        for subscription in subscriptions:
            subscription.close()
        await _send_error(websocket, str(exc))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Replay unavailable")
        return

    tracker = get_connection_tracker()
    if await tracker.connect(user_id):
        await _update_presence(service, user_id, online=True)

    tasks: list[asyncio.Task[None]] = []
    try:
        await safe_send_json(
            websocket,
            {
                "type": "subscribed",
                "entities": [subscription.entity.value for subscription in subscriptions],
                "last_sequences": {
                    subscription.entity.value: bus.last_sequence(subscription.entity)
                    for subscription in subscriptions
                },
            },
        )
        tasks = [
            asyncio.create_task(_pump(websocket, subscription, user_id))
            for subscription in subscriptions
        ]
        tasks.append(asyncio.create_task(_receive_loop(websocket, service, user_id)))
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.warning("Change stream task failed", extra={"user_id": user_id}, exc_info=result)
        for subscription in subscriptions:
            subscription.close()
        if await tracker.disconnect(user_id):
            await _update_presence(service, user_id, online=False)
