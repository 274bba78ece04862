from __future__ import annotations

import logging
from typing import Dict

from .errors import NotReady, StoreError, WriteFailed
from .identity import IdentityResolver
from .models import Message, MessageKind, new_message_id, now_ms, scope_key


logger = logging.getLogger(__name__)


class Composer:
    """Validates and submits messages for the signed-in identity.

    Nothing is appended to a cache here; the message shows up through the
    synchronizer when the store echoes the insert.
    """

    def __init__(self, store, auth, identities: IdentityResolver, *, clock=now_ms) -> None:
        self._store = store
        self._auth = auth
        self._identities = identities
        self._clock = clock
        self._drafts: Dict[str, str] = {}

    def draft(self, scope: str) -> str:
        return self._drafts.get(scope_key(scope), "")

    def set_draft(self, scope: str, text: str) -> None:
        key = scope_key(scope)
        if text:
            self._drafts[key] = text
        else:
            self._drafts.pop(key, None)

    async def submit(self, scope: str, body: str | None = None) -> Message:
        key = scope_key(scope)
        text = self.draft(key) if body is None else body
        message = await self._post(key, text, MessageKind.USER)
        if body is None:
            self._drafts.pop(key, None)
        return message

    async def announce(self, scope: str, body: str) -> Message:
        return await self._post(scope_key(scope), body, MessageKind.SYSTEM)

    async def _post(self, scope: str, text: str, kind: MessageKind) -> Message:
        identity = self._auth.current_identity()
        if identity is None:
            raise NotReady("not signed in")
        display_name = self._identities.cached(identity)
        if display_name is None:
            raise NotReady("display name not claimed")
        body = (text or "").strip()
        if not body:
            raise NotReady("message body is empty")

        message = Message(
            id=new_message_id(),
            owner_id=identity,
            display_name=display_name,
            body=body,
            kind=kind,
            scope=scope,
            created_at_ms=self._clock(),
        )
        try:
            return await self._store.insert(message)
        except StoreError as exc:
            logger.warning("insert into scope %s failed: %s", scope, exc)
            raise WriteFailed(f"failed to send message: {exc}") from exc
