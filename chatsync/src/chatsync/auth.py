from __future__ import annotations

from typing import Callable, List, Optional


IdentityCallback = Callable[[Optional[str]], None]


class LocalAuth:
    """Holds the signed-in identity handle and notifies listeners on change."""

    def __init__(self, identity: str | None = None) -> None:
        self._identity = identity
        self._listeners: List[IdentityCallback] = []

    def current_identity(self) -> str | None:
        return self._identity

    def on_identity_change(self, callback: IdentityCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                return

        return unsubscribe

    def sign_in(self, identity: str) -> None:
        if not identity:
            raise ValueError("identity must be non-empty")
        self._set(identity)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, identity: str | None) -> None:
        if identity == self._identity:
            return
        self._identity = identity
        for listener in list(self._listeners):
            listener(identity)
