"""Publish/subscribe registry and teardown helpers.

Subscribers are keyed by an opaque token; unsubscribing is done through the
Subscription returned at registration time. ReleaseStack runs an ordered list
of release actions and keeps going when one of them fails.
"""
from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_token_counter = itertools.count(1)


class Disposable:
    """A release action that runs at most once."""

    def __init__(self, release: Callable[[], None] | None = None) -> None:
        self._release = release
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._release is not None:
            self._release()


class Subscription(Disposable):
    """Capability token returned by SubscriptionRegistry.subscribe()."""

    def __init__(self, token: int, release: Callable[[], None]) -> None:
        super().__init__(release)
        self.token = token

    def unsubscribe(self) -> None:
        self.dispose()


class SubscriptionRegistry(Generic[T]):
    """Mapping from subscriber token to callback.

    publish() calls subscribers synchronously in registration order, so each
    subscriber sees values in the order they were published. A failing
    subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "registry") -> None:
        self._name = name
        self._subscribers: dict[int, Callable[[T], None]] = {}

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        token = next(_token_counter)
        self._subscribers[token] = callback
        return Subscription(token, lambda: self._subscribers.pop(token, None))

    def publish(self, value: T) -> None:
        for token, callback in list(self._subscribers.items()):
            try:
                callback(value)
            except Exception:
                logger.exception(
                    "%s subscriber %d failed handling %r", self._name, token, value,
                )

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)


class ReleaseStack:
    """Ordered teardown actions, run first-added first.

    Every action runs even if an earlier one raised. Running the stack twice
    is a no-op because actions are discarded once executed.
    """

    def __init__(self, name: str = "release") -> None:
        self._name = name
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def add(self, label: str, action: Callable[[], None]) -> None:
        self._actions.append((label, action))

    def release(self) -> list[str]:
        """Run all pending actions. Returns labels of actions that failed."""
        actions, self._actions = self._actions, []
        failed: list[str] = []
        for label, action in actions:
            try:
                action()
            except Exception:
                logger.exception("%s: release action '%s' failed", self._name, label)
                failed.append(label)
        return failed

    def __len__(self) -> int:
        return len(self._actions)
