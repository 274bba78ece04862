from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


# Matches no row; used to qualify bulk deletes against stores that refuse
# a delete without a row filter.
IMPOSSIBLE_ID = "00000000-0000-0000-0000-000000000000"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return str(uuid.uuid4())


class Scope(str, Enum):
    """Well-known conversation streams.

    Any non-empty string is a valid scope; these are the two the terminal
    client ships with.
    """

    CONSOLE = "console"
    GENERAL = "general"


def scope_key(scope: str) -> str:
    """Normalise a scope value to its plain string key."""

    key = scope.value if isinstance(scope, Scope) else scope
    if not isinstance(key, str) or not key:
        raise ValueError("scope must be a non-empty string")
    return key


class MessageKind(str, Enum):
    SYSTEM = "system"
    USER = "user"


class ChangeKind(str, Enum):
    INSERT = "insert"
    DELETE = "delete"


@dataclass(frozen=True)
class Message:
    """An immutable chat message row."""

    id: str
    owner_id: str
    display_name: str
    body: str
    kind: MessageKind
    scope: str
    created_at_ms: int

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.created_at_ms, self.id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        try:
            return cls(
                id=str(data["id"]),
                owner_id=str(data["owner_id"]),
                display_name=str(data["display_name"]),
                body=str(data["body"]),
                kind=MessageKind(data["kind"]),
                scope=scope_key(data["scope"]),
                created_at_ms=int(data["created_at_ms"]),
            )
        except KeyError as exc:
            raise ValueError(f"message field missing: {exc.args[0]}") from exc


@dataclass(frozen=True)
class ChangeEvent:
    """A row-change notification emitted by a store for one scope.

    Delete events carry no message: a single delete may remove many rows and
    consumers are expected to refetch rather than apply a diff.
    """

    kind: ChangeKind
    scope: str
    message: Message | None = None


@dataclass(frozen=True)
class DeleteCriteria:
    scope: str
    owner_id: str | None = None
    id_neq: str | None = None

    @property
    def qualified(self) -> bool:
        return self.owner_id is not None or self.id_neq is not None

    def matches(self, message: Message) -> bool:
        if message.scope != self.scope:
            return False
        if self.owner_id is not None and message.owner_id != self.owner_id:
            return False
        if self.id_neq is not None and message.id == self.id_neq:
            return False
        return True
