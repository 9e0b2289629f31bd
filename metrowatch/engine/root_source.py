"""Current working root with change notifications."""
from __future__ import annotations

from collections.abc import Callable

from .subscriptions import Subscription, SubscriptionRegistry


class RootSource:
    """Holds the current root and notifies subscribers when it changes.

    Setting the same value again is not a change.
    """

    def __init__(self, initial: str | None = None) -> None:
        self._value = initial
        self._subscribers: SubscriptionRegistry[str | None] = SubscriptionRegistry("root")

    @property
    def value(self) -> str | None:
        return self._value

    def set(self, root: str | None) -> None:
        if root == self._value:
            return
        self._value = root
        self._subscribers.publish(root)

    def subscribe(self, callback: Callable[[str | None], None]) -> Subscription:
        return self._subscribers.subscribe(callback)
