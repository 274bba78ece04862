from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Callable, Dict, List, Tuple

from .cache import MessageCache
from .config import SyncConfig
from .errors import ReadFailed, StoreError
from .models import ChangeEvent, ChangeKind, Message, scope_key


logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    CLOSED = "closed"
    LOADING = "loading"
    LIVE = "live"
    RELOADING = "reloading"


class _Marker(Enum):
    LOAD = "load"
    RESYNC = "resync"


class ScopeSynchronizer:
    """Keeps one scope's :class:`MessageCache` in step with the store.

    A single worker task consumes the subscription's notifications in arrival
    order. Inserts are merged into the cache by ``(created_at_ms, id)``; any
    delete, and any reconnect of the feed, invalidates the cache and triggers
    a full re-read. Structural events queued behind an in-flight reload are
    coalesced into one follow-up reload.
    """

    def __init__(self, scope: str, store, feed, *, config: SyncConfig | None = None) -> None:
        self.scope = scope_key(scope)
        self.config = config or SyncConfig()
        self.cache = MessageCache(self.scope)
        self.state = SyncState.CLOSED
        self.degraded = False
        self.last_error: ReadFailed | None = None
        self._store = store
        self._feed = feed
        self._queue: asyncio.Queue[Tuple[int, object]] = asyncio.Queue()
        self._received = itertools.count(1)
        self._last_received = 0
        self._local_filters: List[Tuple[int, Callable[[Message], bool]]] = []
        self._generation = 0
        self._subscription = None
        self._worker: asyncio.Task | None = None
        self._settled = asyncio.Event()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._worker is not None and not self._closed

    def snapshot(self) -> Tuple[Message, ...]:
        return self.cache.snapshot()

    async def open(self) -> None:
        """Subscribe, load the scope, and return once the cache is live.

        Also returns when the initial load has failed often enough to mark the
        synchronizer degraded; the worker keeps retrying in the background.
        """

        if self._closed:
            raise RuntimeError("synchronizer is closed")
        if self._worker is not None:
            return
        self._set_state(SyncState.LOADING)
        self._subscription = self._feed.subscribe(self.scope, self._on_change, on_reconnect=self._on_reconnect)
        self._enqueue(_Marker.LOAD)
        self._worker = asyncio.create_task(self._run(), name=f"chatsync-sync-{self.scope}")
        settled = asyncio.create_task(self._settled.wait())
        done, _ = await asyncio.wait({settled, self._worker}, return_when=asyncio.FIRST_COMPLETED)
        if settled not in done:
            settled.cancel()
            if self._closed:
                return
            # The worker only finishes early by raising.
            self._worker.result()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        self.cache.clear()
        self._local_filters.clear()
        self._set_state(SyncState.CLOSED)
        self._settled.set()

    async def wait_idle(self) -> None:
        """Wait until every notification received so far has been handled."""

        if self._closed:
            return
        await self._queue.join()

    def apply_local(self, predicate: Callable[[Message], bool]) -> int:
        """Remove matching messages from the cache ahead of the store echo.

        Notifications already received are filtered with the same predicate
        when their turn comes, and a reload that read the store before this
        call is discarded and repeated.
        """

        if self._closed:
            return 0
        self._generation += 1
        self._local_filters.append((self._last_received, predicate))
        return self.cache.remove_where(predicate)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.scope != self.scope or self._closed:
            return
        self._enqueue(event)

    def _on_reconnect(self) -> None:
        if self._closed:
            return
        logger.info("change feed for scope %s reconnected; resyncing", self.scope)
        self._enqueue(_Marker.RESYNC)

    def _enqueue(self, item: object) -> None:
        self._last_received = next(self._received)
        self._queue.put_nowait((self._last_received, item))

    async def _run(self) -> None:
        while True:
            seq, item = await self._queue.get()
            try:
                if isinstance(item, ChangeEvent) and item.kind is ChangeKind.INSERT:
                    self._apply_insert(seq, item)
                else:
                    seq = self._drain(seq)
                    state = SyncState.RELOADING if self.state is SyncState.LIVE else SyncState.LOADING
                    if item is _Marker.RESYNC:
                        state = SyncState.LOADING
                    await self._reload(state)
                self._forget_filters(seq)
            finally:
                self._queue.task_done()

    def _drain(self, seq: int) -> int:
        # Everything already queued was committed before the read we are about to do.
        while True:
            try:
                seq, _ = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return seq
            self._queue.task_done()

    def _apply_insert(self, seq: int, event: ChangeEvent) -> None:
        message = event.message
        if message is None:
            return
        for mark, predicate in self._local_filters:
            if seq <= mark and predicate(message):
                return
        self.cache.insert(message)

    def _forget_filters(self, seq: int) -> None:
        if self._local_filters:
            self._local_filters = [(mark, predicate) for mark, predicate in self._local_filters if mark > seq]

    async def _reload(self, state: SyncState) -> None:
        self._set_state(state)
        failures = 0
        while True:
            generation = self._generation
            try:
                messages = await self._store.select_all(self.scope)
            except StoreError as exc:
                failures += 1
                self.last_error = ReadFailed(f"failed to load scope {self.scope}: {exc}")
                logger.warning("reload of scope %s failed (attempt %d): %s", self.scope, failures, exc)
                if failures >= self.config.degraded_after_failures and not self.degraded:
                    self.degraded = True
                    logger.warning("scope %s degraded after %d failed reloads", self.scope, failures)
                    self._settled.set()
                await asyncio.sleep(self.config.reload_delay_s(failures))
                continue
            if self._closed:
                return
            if generation != self._generation:
                logger.debug("discarding stale reload of scope %s", self.scope)
                continue
            self.cache.replace(messages)
            self.degraded = False
            self.last_error = None
            self._set_state(SyncState.LIVE)
            self._settled.set()
            return

    def _set_state(self, state: SyncState) -> None:
        if state is not self.state:
            logger.debug("scope %s: %s -> %s", self.scope, self.state.value, state.value)
            self.state = state


class SyncManager:
    """Owns at most one open :class:`ScopeSynchronizer` per scope."""

    def __init__(self, store, feed, *, config: SyncConfig | None = None) -> None:
        self._store = store
        self._feed = feed
        self._config = config or SyncConfig()
        self._active: Dict[str, ScopeSynchronizer] = {}

    def get(self, scope: str) -> ScopeSynchronizer | None:
        return self._active.get(scope_key(scope))

    def scopes(self) -> List[str]:
        return list(self._active)

    async def open(self, scope: str) -> ScopeSynchronizer:
        key = scope_key(scope)
        existing = self._active.pop(key, None)
        if existing is not None:
            await existing.close()
        synchronizer = ScopeSynchronizer(key, self._store, self._feed, config=self._config)
        self._active[key] = synchronizer
        try:
            await synchronizer.open()
        except BaseException:
            if self._active.get(key) is synchronizer:
                self._active.pop(key, None)
            await synchronizer.close()
            raise
        return synchronizer

    async def close(self, scope: str) -> None:
        synchronizer = self._active.pop(scope_key(scope), None)
        if synchronizer is not None:
            await synchronizer.close()

    async def close_all(self) -> None:
        for key in list(self._active):
            await self.close(key)
