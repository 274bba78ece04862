"""aiohttp clients for a chatsync store server.

``RemoteMessageStore`` and ``RemoteProfileStore`` speak the JSON endpoints
served by :mod:`chatsync.ws_transport`; ``RemoteChangeFeed`` keeps one
WebSocket per subscribed scope and reconnects with backoff when the
transport drops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import SyncConfig
from .errors import StoreError, UniqueViolation, UnqualifiedDelete
from .hub import Callback, ReconnectCallback
from .models import ChangeEvent, ChangeKind, DeleteCriteria, Message


logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class _RemoteClient:
    def __init__(self, session: aiohttp.ClientSession, base_url: str) -> None:
        self._session = session
        self._base_url = base_url

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._session.post(_build_url(self._base_url, path), json=payload) as response:
                try:
                    data = await response.json()
                except (aiohttp.ContentTypeError, ValueError):
                    data = {}
                if response.status == 409 and data.get("code") == UniqueViolation.code:
                    raise UniqueViolation(str(data.get("message", "")), constraint=data.get("constraint"))
                if response.status == 400 and data.get("code") == UnqualifiedDelete.code:
                    raise UnqualifiedDelete(str(data.get("message", "")))
                if response.status != 200:
                    error = StoreError(f"{path} returned {response.status}: {data.get('message', '')}")
                    error.code = data.get("code")
                    raise error
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreError(f"{path} request failed: {exc}") from exc


class RemoteMessageStore(_RemoteClient):
    async def insert(self, message: Message) -> Message:
        await self._post_json("/v1/messages", {"message": message.to_dict()})
        return message

    async def select_all(self, scope: str) -> List[Message]:
        data = await self._post_json("/v1/messages/select", {"scope": scope})
        try:
            return [Message.from_dict(row) for row in data.get("messages", [])]
        except ValueError as exc:
            raise StoreError(f"malformed message row: {exc}") from exc

    async def delete_where(self, criteria: DeleteCriteria) -> int:
        payload: Dict[str, Any] = {"scope": criteria.scope}
        if criteria.owner_id is not None:
            payload["owner_id"] = criteria.owner_id
        if criteria.id_neq is not None:
            payload["id_neq"] = criteria.id_neq
        data = await self._post_json("/v1/messages/delete", payload)
        return int(data.get("deleted", 0))


class RemoteProfileStore(_RemoteClient):
    async def get(self, identity: str) -> str | None:
        data = await self._post_json("/v1/profiles/get", {"user_id": identity})
        username = data.get("username")
        return username if isinstance(username, str) else None

    async def claim(self, identity: str, name: str) -> str:
        await self._post_json("/v1/profiles/claim", {"user_id": identity, "username": name})
        return name


class RemoteSubscription:
    """One scope's WebSocket listener, run as a background task."""

    def __init__(
        self,
        feed: "RemoteChangeFeed",
        scope: str,
        callback: Callback,
        on_reconnect: Optional[ReconnectCallback],
    ) -> None:
        self.scope = scope
        self.callback = callback
        self.on_reconnect = on_reconnect
        self._feed = feed
        self._ready = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"chatsync-feed-{self.scope}")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        failures = 0
        while True:
            try:
                async with self._feed.session.ws_connect(
                    _build_url(self._feed.base_url, "/v1/ws"), heartbeat=self._feed.heartbeat_s
                ) as ws:
                    await ws.send_json({"v": 1, "t": "changes.subscribe", "body": {"scope": self.scope}})
                    async for msg in ws:
                        if msg.type != aiohttp.WSMsgType.TEXT:
                            break
                        frame = msg.json()
                        if not isinstance(frame, dict):
                            continue
                        frame_type = frame.get("t")
                        if frame_type == "changes.ready":
                            failures = 0
                            # The first connection can also trail the subscriber's initial read.
                            if self.on_reconnect is not None:
                                self.on_reconnect()
                            self._ready.set()
                        elif frame_type == "change":
                            event = _parse_change(frame.get("body") or {})
                            if event is not None and event.scope == self.scope:
                                self.callback(event)
                        elif frame_type == "ping":
                            await ws.send_json({"v": 1, "t": "pong"})
                        elif frame_type == "error":
                            logger.warning("change feed error for scope %s: %s", self.scope, frame.get("body"))
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
                logger.warning("change feed for scope %s dropped: %s", self.scope, exc)
            failures += 1
            delay = self._feed.config.reconnect_delay_s(failures)
            logger.info("reconnecting change feed for scope %s in %.2fs", self.scope, delay)
            await asyncio.sleep(delay)


def _parse_change(body: Dict[str, Any]) -> ChangeEvent | None:
    try:
        kind = ChangeKind(body.get("kind"))
        scope = body["scope"]
        raw = body.get("message")
        message = Message.from_dict(raw) if kind is ChangeKind.INSERT and isinstance(raw, dict) else None
    except (KeyError, ValueError):
        return None
    return ChangeEvent(kind=kind, scope=scope, message=message)


class RemoteChangeFeed:
    """Change feed over the store server's WebSocket endpoint.

    Every established connection, the first included, is reported through
    ``on_reconnect``: events published before the server acknowledged the
    subscription were never delivered, so the subscriber has to re-read.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        config: SyncConfig | None = None,
        heartbeat_s: float | None = None,
    ) -> None:
        self.session = session
        self.base_url = base_url
        self.config = config or SyncConfig()
        self.heartbeat_s = heartbeat_s
        self._subscriptions: List[RemoteSubscription] = []

    def subscribe(
        self,
        scope: str,
        callback: Callback,
        *,
        on_reconnect: Optional[ReconnectCallback] = None,
    ) -> RemoteSubscription:
        self._subscriptions = [s for s in self._subscriptions if not s.done]
        subscription = RemoteSubscription(self, scope, callback, on_reconnect)
        self._subscriptions.append(subscription)
        subscription.start()
        return subscription

    def unsubscribe(self, subscription: RemoteSubscription) -> None:
        # Kept until its task finishes; aclose awaits it.
        subscription.cancel()

    async def aclose(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.cancel()
        await asyncio.gather(*(subscription.wait_closed() for subscription in subscriptions))
