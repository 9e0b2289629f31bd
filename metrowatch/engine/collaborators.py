"""Interfaces the supervisor calls into.

The host (console, HTTP server, editor integration) supplies concrete
implementations; the engine never talks to a UI directly.
"""
from __future__ import annotations

import abc
from collections.abc import Awaitable, Callable

from .models import ErrorKind

RestartCallback = Callable[[], Awaitable[None]]


class ErrorReporter(abc.ABC):
    """Receives actionable failures. Rendering is the host's concern."""

    @abc.abstractmethod
    def report(self, kind: ErrorKind, detail: str) -> None:
        """Surface one failure to the user."""


class Prompter(abc.ABC):
    """Asks the user questions on behalf of the supervisor."""

    @abc.abstractmethod
    async def confirm_tunnel(self, root: str, ports: list[int]) -> bool:
        """Ask whether to open a tunnel for a remote root."""

    @abc.abstractmethod
    def offer_restart(self, root: str | None, accept: RestartCallback) -> None:
        """Offer to start again after a root change.

        Must not block; the host calls *accept* if the user agrees.
        """
