from __future__ import annotations

import logging
from typing import Callable

from .composer import Composer
from .config import SyncConfig
from .errors import NotReady, ReadFailed
from .identity import IdentityResolver
from .models import Message
from .moderation import ModerationEngine
from .synchronizer import ScopeSynchronizer, SyncManager


logger = logging.getLogger(__name__)


class ChatClient:
    """View-layer entry point for one client session.

    Wires the identity resolver, composer, moderation engine and per-scope
    synchronizers over a message store, a change feed, a profile store and an
    auth collaborator.
    """

    def __init__(self, *, store, feed, profiles, auth, config: SyncConfig | None = None) -> None:
        self.config = config or SyncConfig()
        self.auth = auth
        self.identities = IdentityResolver(profiles, max_name_length=self.config.max_name_length)
        self.syncs = SyncManager(store, feed, config=self.config)
        self.composer = Composer(store, auth, self.identities)
        self.moderation = ModerationEngine(store, self.syncs)
        self._unsubscribe_auth: Callable[[], None] | None = auth.on_identity_change(self._identity_changed)

    def _identity_changed(self, identity: str | None) -> None:
        logger.debug("identity changed; dropping cached display name")
        self.identities.reset()

    def _require_identity(self) -> str:
        identity = self.auth.current_identity()
        if identity is None:
            raise NotReady("not signed in")
        return identity

    async def display_name(self) -> str | None:
        """Return the current identity's display name, or ``None`` if unclaimed."""

        return await self.identities.resolve(self._require_identity())

    async def claim_username(self, name: str) -> str:
        return await self.identities.claim(self._require_identity(), name)

    async def open_scope(self, scope: str) -> ScopeSynchronizer:
        return await self.syncs.open(scope)

    async def close_scope(self, scope: str) -> None:
        await self.syncs.close(scope)

    async def submit(self, scope: str, body: str | None = None) -> Message:
        try:
            await self.display_name()
        except ReadFailed as exc:
            raise NotReady(f"display name unavailable: {exc}") from exc
        return await self.composer.submit(scope, body)

    async def clear_mine(self, scope: str) -> int:
        return await self.moderation.clear_mine(scope, self._require_identity())

    async def clear_everyone(self, scope: str) -> int:
        return await self.moderation.clear_everyone(scope)

    async def close(self) -> None:
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        await self.syncs.close_all()
