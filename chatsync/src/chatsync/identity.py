from __future__ import annotations

import logging
from typing import Optional, Tuple

from .errors import (
    IdentityAlreadyNamed,
    InvalidName,
    NameTaken,
    ReadFailed,
    StoreError,
    UniqueViolation,
    WriteFailed,
)


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 20


class IdentityResolver:
    """Claims and caches the display name bound to the session identity.

    ``resolve`` returns ``None`` when the identity still needs to claim a
    name. A found or claimed binding is cached until ``reset`` is called,
    which the client does whenever the auth collaborator reports a new
    identity.
    """

    def __init__(self, profiles, *, max_name_length: int = MAX_NAME_LENGTH) -> None:
        self._profiles = profiles
        self._max_name_length = max_name_length
        self._binding: Optional[Tuple[str, str]] = None

    def cached(self, identity: str | None) -> str | None:
        if identity is None or self._binding is None:
            return None
        bound_identity, name = self._binding
        return name if bound_identity == identity else None

    async def resolve(self, identity: str) -> str | None:
        name = self.cached(identity)
        if name is not None:
            return name
        try:
            name = await self._profiles.get(identity)
        except StoreError as exc:
            raise ReadFailed(f"failed to look up display name: {exc}") from exc
        if name is not None:
            self._binding = (identity, name)
        return name

    def validate(self, proposed_name: str) -> str:
        name = (proposed_name or "").strip()
        if not name:
            raise InvalidName("display name must not be empty")
        if len(name) > self._max_name_length:
            raise InvalidName(f"display name must be at most {self._max_name_length} characters")
        return name

    async def claim(self, identity: str, proposed_name: str) -> str:
        name = self.validate(proposed_name)
        try:
            await self._profiles.claim(identity, name)
        except UniqueViolation as exc:
            if exc.constraint == "user_id":
                existing = await self.resolve(identity)
                raise IdentityAlreadyNamed(identity, existing or "") from exc
            raise NameTaken(name) from exc
        except StoreError as exc:
            logger.warning("display name claim failed for %s: %s", identity, exc)
            raise WriteFailed(f"failed to claim display name: {exc}") from exc
        self._binding = (identity, name)
        return name

    def reset(self) -> None:
        self._binding = None
