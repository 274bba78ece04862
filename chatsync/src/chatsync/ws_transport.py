from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Union

from aiohttp import WSMsgType, web

from .errors import StoreError, UniqueViolation, UnqualifiedDelete
from .hub import ChangeHub, Subscription
from .models import ChangeEvent, DeleteCriteria, Message
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteMessageStore, SQLiteProfileStore
from .store import InMemoryMessageStore, InMemoryProfileStore


logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        messages,
        profiles,
        hub: ChangeHub,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.messages = messages
        self.profiles = profiles
        self.hub = hub
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)
SOCKETS_KEY = web.AppKey("sockets", set)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _store_error(exc: StoreError) -> web.Response:
    return web.json_response({"code": exc.code or "store_error", "message": str(exc)}, status=503)


async def _read_json(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


async def handle_message_insert(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    raw = body.get("message")
    if not isinstance(raw, dict):
        return _invalid_request("message required")
    try:
        message = Message.from_dict(raw)
    except ValueError as exc:
        return _invalid_request(str(exc))
    if not message.body.strip():
        return _invalid_request("body must not be empty")
    try:
        await runtime.messages.insert(message)
    except UniqueViolation as exc:
        return web.json_response(
            {"code": exc.code, "constraint": exc.constraint, "message": str(exc)}, status=409
        )
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"status": "ok", "message": message.to_dict()})


async def handle_message_select(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    scope = body.get("scope")
    if not isinstance(scope, str) or not scope:
        return _invalid_request("scope required")
    try:
        messages = await runtime.messages.select_all(scope)
    except StoreError as exc:
        return _store_error(exc)
    response = web.json_response({"messages": [message.to_dict() for message in messages]})
    response.headers["Cache-Control"] = "no-store"
    return response


async def handle_message_delete(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    scope = body.get("scope")
    owner_id = body.get("owner_id")
    id_neq = body.get("id_neq")
    if not isinstance(scope, str) or not scope:
        return _invalid_request("scope required")
    if owner_id is not None and not isinstance(owner_id, str):
        return _invalid_request("owner_id must be a string")
    if id_neq is not None and not isinstance(id_neq, str):
        return _invalid_request("id_neq must be a string")
    criteria = DeleteCriteria(scope=scope, owner_id=owner_id, id_neq=id_neq)
    try:
        deleted = await runtime.messages.delete_where(criteria)
    except UnqualifiedDelete as exc:
        return web.json_response({"code": exc.code, "message": str(exc)}, status=400)
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"status": "ok", "deleted": deleted})


async def handle_profile_get(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    user_id = body.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    try:
        username = await runtime.profiles.get(user_id)
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"user_id": user_id, "username": username})


async def handle_profile_claim(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    user_id = body.get("user_id")
    username = body.get("username")
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    if not isinstance(username, str) or not username.strip():
        return _invalid_request("username required")
    try:
        await runtime.profiles.claim(user_id, username.strip())
    except UniqueViolation as exc:
        return web.json_response(
            {"code": exc.code, "constraint": exc.constraint, "message": str(exc)}, status=409
        )
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"status": "ok", "user_id": user_id, "username": username.strip()})


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
) -> web.Application:
    hub = ChangeHub()
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        messages = SQLiteMessageStore(backend, hub)
        profiles = SQLiteProfileStore(backend)
    else:
        messages = InMemoryMessageStore(hub)
        profiles = InMemoryProfileStore()

    runtime = Runtime(messages=messages, profiles=profiles, hub=hub, backend=backend)
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/messages", handle_message_insert)
    app.router.add_post("/v1/messages/select", handle_message_select)
    app.router.add_post("/v1/messages/delete", handle_message_delete)
    app.router.add_post("/v1/profiles/get", handle_profile_get)
    app.router.add_post("/v1/profiles/claim", handle_profile_claim)
    app.router.add_get("/v1/ws", websocket_handler)
    app[SOCKETS_KEY] = set()
    app.on_shutdown.append(close_sockets)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


async def close_sockets(app: web.Application) -> None:
    for ws in list(app[SOCKETS_KEY]):
        await ws.close(code=1001, message=b"server shutdown")


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _change_frame(event: ChangeEvent) -> dict[str, Any]:
    return {
        "v": 1,
        "t": "change",
        "body": {
            "kind": event.kind.value,
            "scope": event.scope,
            "message": event.message.to_dict() if event.message is not None else None,
        },
    }


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    sockets = request.app[SOCKETS_KEY]
    sockets.add(ws)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[ChangeEvent, dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: List[Subscription] = []
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_event(event: ChangeEvent | dict) -> None:
        try:
            outbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("closing change feed socket: outbound queue full")
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                event = await outbound.get()
                if event is None:
                    break
                if isinstance(event, ChangeEvent):
                    await ws.send_json(_change_frame(event))
                else:
                    await ws.send_json(event)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_event(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue_event(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    enqueue_event(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    enqueue_event({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "changes.subscribe":
                    scope = body.get("scope")
                    if not isinstance(scope, str) or not scope:
                        enqueue_event(_error_frame("invalid_request", "scope required", request_id=frame.get("id")))
                        continue
                    if any(subscription.scope == scope for subscription in subscriptions):
                        enqueue_event(
                            _error_frame("invalid_request", "already subscribed", request_id=frame.get("id"))
                        )
                        continue
                    subscriptions.append(runtime.hub.subscribe(scope, enqueue_event))
                    enqueue_event({"v": 1, "t": "changes.ready", "id": frame.get("id"), "body": {"scope": scope}})
                elif frame_type == "changes.unsubscribe":
                    scope = body.get("scope")
                    for subscription in [s for s in subscriptions if s.scope == scope]:
                        runtime.hub.unsubscribe(subscription)
                        subscriptions.remove(subscription)
                else:
                    enqueue_event(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        sockets.discard(ws)
        for subscription in subscriptions:
            runtime.hub.unsubscribe(subscription)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
