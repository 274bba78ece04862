from __future__ import annotations

from typing import Dict, List

from .errors import UniqueViolation, UnqualifiedDelete
from .hub import ChangeHub
from .models import ChangeEvent, ChangeKind, DeleteCriteria, Message


class InMemoryMessageStore:
    """In-memory message rows partitioned by scope.

    Each mutation completes without suspending, so the insert or delete and
    the notification it emits are atomic with respect to other coroutines.
    """

    def __init__(self, hub: ChangeHub | None = None) -> None:
        self.hub = hub or ChangeHub()
        self._rows: Dict[str, Dict[str, Message]] = {}

    async def insert(self, message: Message) -> Message:
        rows = self._rows.setdefault(message.scope, {})
        if message.id in rows:
            raise UniqueViolation(f"duplicate message id: {message.id}", constraint="id")
        rows[message.id] = message
        self.hub.broadcast(ChangeEvent(kind=ChangeKind.INSERT, scope=message.scope, message=message))
        return message

    async def select_all(self, scope: str) -> List[Message]:
        rows = self._rows.get(scope, {})
        return sorted(rows.values(), key=lambda message: message.sort_key)

    async def delete_where(self, criteria: DeleteCriteria) -> int:
        if not criteria.qualified:
            raise UnqualifiedDelete("delete requires a row filter")
        rows = self._rows.get(criteria.scope, {})
        doomed = [message_id for message_id, message in rows.items() if criteria.matches(message)]
        for message_id in doomed:
            rows.pop(message_id, None)
        if not rows:
            self._rows.pop(criteria.scope, None)
        if doomed:
            self.hub.broadcast(ChangeEvent(kind=ChangeKind.DELETE, scope=criteria.scope))
        return len(doomed)


class InMemoryProfileStore:
    """Identity to display-name bindings with a uniqueness constraint on names."""

    def __init__(self) -> None:
        self._names: Dict[str, str] = {}
        self._owners: Dict[str, str] = {}

    async def get(self, identity: str) -> str | None:
        return self._names.get(identity)

    async def claim(self, identity: str, name: str) -> str:
        if identity in self._names:
            raise UniqueViolation(f"profile already exists for user: {identity}", constraint="user_id")
        if name in self._owners:
            raise UniqueViolation(f"username already exists: {name}", constraint="username")
        self._names[identity] = name
        self._owners[name] = identity
        return name
