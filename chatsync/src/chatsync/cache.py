from __future__ import annotations

import bisect
from typing import Callable, Dict, Iterable, List, Tuple

from .models import Message


Listener = Callable[[Tuple[Message, ...]], None]


class MessageCache:
    """Ordered in-memory projection of one scope's messages.

    Messages are kept sorted by ``(created_at_ms, id)``. Every mutation is
    synchronous; readers get immutable snapshots.
    """

    def __init__(self, scope: str) -> None:
        self.scope = scope
        self._messages: List[Message] = []
        self._keys: List[Tuple[int, str]] = []
        self._by_id: Dict[str, Message] = {}
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return remove

    def insert(self, message: Message) -> bool:
        """Insert ``message`` at its ordered position; ignore known ids."""

        if message.scope != self.scope:
            raise ValueError(f"message scope {message.scope!r} does not match cache scope {self.scope!r}")
        if message.id in self._by_id:
            return False
        key = message.sort_key
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message.id] = message
        self._notify()
        return True

    def replace(self, messages: Iterable[Message]) -> None:
        unique: Dict[str, Message] = {}
        for message in messages:
            if message.scope != self.scope:
                continue
            unique[message.id] = message
        ordered = sorted(unique.values(), key=lambda message: message.sort_key)
        self._messages = ordered
        self._keys = [message.sort_key for message in ordered]
        self._by_id = dict(unique)
        self._notify()

    def remove_where(self, predicate: Callable[[Message], bool]) -> int:
        kept = [message for message in self._messages if not predicate(message)]
        removed = len(self._messages) - len(kept)
        if removed:
            self._messages = kept
            self._keys = [message.sort_key for message in kept]
            self._by_id = {message.id: message for message in kept}
            self._notify()
        return removed

    def clear(self) -> None:
        if not self._messages:
            return
        self._messages = []
        self._keys = []
        self._by_id = {}
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)
