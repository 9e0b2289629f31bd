"""Error reporter and prompter that route through the EventBus.

Hosts render ErrorReported / TunnelQuestion / RestartOffered events and
call back into BusPrompter with the user's answers.
"""
from __future__ import annotations

import asyncio
import logging
import uuid

from metrowatch.adapters.event_bus import EventBus
from metrowatch.adapters.events import ErrorReported, RestartOffered, TunnelQuestion
from metrowatch.engine.collaborators import ErrorReporter, Prompter, RestartCallback
from metrowatch.engine.models import ErrorKind

logger = logging.getLogger(__name__)

ROOT_CHANGED_MESSAGE = (
    "Metro was stopped, because your Current Working Root has changed."
)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class BusErrorReporter(ErrorReporter):
    """Logs each failure and publishes it for the host to display."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    def report(self, kind: ErrorKind, detail: str) -> None:
        # Port conflicts are usually a bundler already running elsewhere.
        if kind is ErrorKind.PORT_BUSY:
            logger.warning("%s: %s", kind.value, detail)
        else:
            logger.error("%s: %s", kind.value, detail)
        self._bus.publish(ErrorReported(kind=kind.value, detail=detail))


class BusPrompter(Prompter):
    """Publishes questions and offers; answers come back via answer()/accept_offer()."""

    def __init__(self, bus: EventBus, question_timeout: float = 0.0) -> None:
        self._bus = bus
        self._question_timeout = question_timeout
        self._questions: dict[str, asyncio.Future[bool]] = {}
        self._offers: dict[str, RestartCallback] = {}

    # ── Tunnel questions ──

    async def confirm_tunnel(self, root: str, ports: list[int]) -> bool:
        request_id = _new_id()
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._questions[request_id] = future
        self._bus.publish(TunnelQuestion(
            project_root=root, request_id=request_id, ports=list(ports),
        ))
        try:
            if self._question_timeout > 0:
                return await asyncio.wait_for(future, timeout=self._question_timeout)
            return await future
        except asyncio.TimeoutError:
            logger.info("Tunnel question %s timed out; not opening tunnel", request_id)
            return False
        finally:
            self._questions.pop(request_id, None)

    def pending_questions(self) -> list[str]:
        return list(self._questions)

    def answer(self, request_id: str | None, accepted: bool) -> bool:
        """Answer a pending question (the oldest one if *request_id* is None)."""
        if request_id is None:
            request_id = next(iter(self._questions), None)
        future = self._questions.get(request_id) if request_id else None
        if future is None or future.done():
            return False
        future.set_result(accepted)
        return True

    # ── Restart offers ──

    def offer_restart(self, root: str | None, accept: RestartCallback) -> None:
        # A newer offer supersedes older ones.
        self._offers.clear()
        offer_id = _new_id()
        self._offers[offer_id] = accept
        self._bus.publish(RestartOffered(
            project_root=root, offer_id=offer_id, message=ROOT_CHANGED_MESSAGE,
        ))

    def pending_offers(self) -> list[str]:
        return list(self._offers)

    async def accept_offer(self, offer_id: str | None = None) -> bool:
        """Run the start callback of an offer (the latest if *offer_id* is None)."""
        if offer_id is None:
            offer_id = next(reversed(self._offers), None) if self._offers else None
        accept = self._offers.pop(offer_id, None) if offer_id else None
        if accept is None:
            return False
        await accept()
        return True

    def dismiss_offers(self) -> None:
        self._offers.clear()
