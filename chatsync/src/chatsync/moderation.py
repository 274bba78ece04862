from __future__ import annotations

import logging
from typing import Callable, FrozenSet

from .errors import NotReady, StoreError, WriteFailed
from .models import IMPOSSIBLE_ID, DeleteCriteria, Message, scope_key
from .synchronizer import SyncManager


logger = logging.getLogger(__name__)


class ModerationEngine:
    """Scoped deletions with optimistic local cache updates.

    The rows the open synchronizer shows when a clear is issued are trimmed as
    soon as the store confirms the delete; its own reload on the delete
    notification converges on the same state. Rows committed after the delete
    are never touched. Failed deletes leave the cache alone and are never
    retried here.
    """

    def __init__(self, store, syncs: SyncManager | None = None) -> None:
        self._store = store
        self._syncs = syncs

    async def clear_mine(self, scope: str, identity: str | None) -> int:
        if not identity:
            raise NotReady("not signed in")
        key = scope_key(scope)
        doomed = self._visible_ids(key, lambda message: message.owner_id == identity)
        deleted = await self._delete(DeleteCriteria(scope=key, owner_id=identity))
        self._apply_local(key, doomed)
        return deleted

    async def clear_everyone(self, scope: str) -> int:
        key = scope_key(scope)
        doomed = self._visible_ids(key, lambda message: True)
        deleted = await self._delete(DeleteCriteria(scope=key, id_neq=IMPOSSIBLE_ID))
        self._apply_local(key, doomed)
        return deleted

    async def _delete(self, criteria: DeleteCriteria) -> int:
        try:
            deleted = await self._store.delete_where(criteria)
        except StoreError as exc:
            logger.warning("delete in scope %s failed: %s", criteria.scope, exc)
            raise WriteFailed(f"failed to clear messages: {exc}") from exc
        logger.debug("deleted %d messages from scope %s", deleted, criteria.scope)
        return deleted

    def _visible_ids(self, scope: str, predicate: Callable[[Message], bool]) -> FrozenSet[str]:
        if self._syncs is None:
            return frozenset()
        synchronizer = self._syncs.get(scope)
        if synchronizer is None:
            return frozenset()
        return frozenset(message.id for message in synchronizer.snapshot() if predicate(message))

    def _apply_local(self, scope: str, doomed: FrozenSet[str]) -> None:
        if self._syncs is None:
            return
        synchronizer = self._syncs.get(scope)
        if synchronizer is not None:
            synchronizer.apply_local(lambda message: message.id in doomed)
