from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .models import ChangeEvent


Callback = Callable[[ChangeEvent], None]
ReconnectCallback = Callable[[], None]


@dataclass
class Subscription:
    scope: str
    callback: Callback
    on_reconnect: Optional[ReconnectCallback] = None
    connected: bool = True

    def deliver(self, event: ChangeEvent) -> None:
        # Events during a transport gap are lost, as they would be on the wire.
        if self.connected:
            self.callback(event)


class ChangeHub:
    """Registers per-scope subscriptions and fans change events out to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        scope: str,
        callback: Callback,
        *,
        on_reconnect: Optional[ReconnectCallback] = None,
    ) -> Subscription:
        subscription = Subscription(scope=scope, callback=callback, on_reconnect=on_reconnect)
        self._subscriptions.setdefault(scope, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.scope)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.scope, None)

    def broadcast(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.scope, [])):
            subscription.deliver(event)

    def subscriber_count(self, scope: str) -> int:
        return len(self._subscriptions.get(scope, []))

    def drop_connections(self, scope: str) -> None:
        """Simulate a transport drop for every subscriber of ``scope``."""

        for subscription in self._subscriptions.get(scope, []):
            subscription.connected = False

    def restore_connections(self, scope: str) -> None:
        """Re-establish dropped subscriptions and signal the reconnect."""

        for subscription in list(self._subscriptions.get(scope, [])):
            if subscription.connected:
                continue
            subscription.connected = True
            if subscription.on_reconnect is not None:
                subscription.on_reconnect()
