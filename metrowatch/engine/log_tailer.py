"""Process log tailer.

Owns one external process: launches it, classifies its output, resolves
readiness, and tears it down. Status transitions are validated against
lifecycle.VALID_TRANSITIONS and delivered synchronously to observers, so
every observer sees them in the order they happened.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .classifier import DEFAULT_RULES, ClassifierRules, classify
from .errors import (
    AlreadyActiveError,
    NoProjectFoundError,
    PortBusyError,
    StartAbortedError,
    SupervisorError,
    UnexpectedProcessError,
)
from .launcher import ProcessHandle, ProcessLauncher
from .lifecycle import validate_transition
from .models import LogMessage, Ready, SessionStatus, StatusChange, StructuredError
from .subscriptions import Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)

PORT_BUSY_CODES = {"EADDRINUSE", "MetroPortBusyError", "PortBusy"}
NO_PROJECT_CODES = {"NoMetroProjectError", "NoProjectFound"}

ErrorHandler = Callable[[SupervisorError], None]


class LogTailer:
    """Supervises a single external process.

    start() resolves once the output yields Ready and raises if a
    structured error or an exit comes first. stop() during startup aborts
    it: the pending start() raises StartAbortedError.
    """

    def __init__(
        self,
        name: str,
        launcher: ProcessLauncher,
        *,
        root_provider: Callable[[], str | None] = lambda: None,
        args_provider: Callable[[str], list[str]] = lambda _root: [],
        rules: ClassifierRules = DEFAULT_RULES,
        port: int | None = None,
        stop_timeout: float = 5.0,
        startup_timeout: float = 0.0,
        on_error: ErrorHandler | None = None,
        track: Callable[[str], None] | None = None,
    ) -> None:
        self._name = name
        self._launcher = launcher
        self._root_provider = root_provider
        self._args_provider = args_provider
        self._rules = rules
        self._port = port
        self._stop_timeout = stop_timeout
        self._startup_timeout = startup_timeout
        self._on_error = on_error
        self._track = track

        self._status = SessionStatus.STOPPED
        self._root: str | None = None
        self._handle: ProcessHandle | None = None
        self._pump_task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._teardown_task: asyncio.Task | None = None

        self._status_observers: SubscriptionRegistry[StatusChange] = (
            SubscriptionRegistry(f"{name} status")
        )
        self._message_observers: SubscriptionRegistry[LogMessage] = (
            SubscriptionRegistry(f"{name} messages")
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def status(self) -> SessionStatus:
        return self._status

    def get_status(self) -> SessionStatus:
        return self._status

    @property
    def root(self) -> str | None:
        """Last root this tailer was started at."""
        return self._root

    def observe_status(self, callback: Callable[[StatusChange], None]) -> Subscription:
        return self._status_observers.subscribe(callback)

    def observe_messages(self, callback: Callable[[LogMessage], None]) -> Subscription:
        return self._message_observers.subscribe(callback)

    # ── Lifecycle ──

    async def start(self, root: str | None = None) -> None:
        """Launch the process and wait for readiness."""
        if self._status is not SessionStatus.STOPPED or self._teardown_task is not None:
            raise AlreadyActiveError(self._status.value)
        root = root if root is not None else self._root_provider()
        if root is None:
            raise NoProjectFoundError(None, "No working root is set.")

        self._root = root
        self._transition(SessionStatus.STARTING)
        self._fire_tracking("start")

        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._ready = ready
        self._pump_task = asyncio.create_task(
            self._pump(root, ready), name=f"{self._name}-pump",
        )
        try:
            if self._startup_timeout > 0:
                await asyncio.wait_for(ready, timeout=self._startup_timeout)
            else:
                await ready
        except asyncio.TimeoutError:
            logger.warning(
                "%s not ready after %.1fs; aborting startup",
                self._name, self._startup_timeout,
            )
            await self._teardown()
            raise UnexpectedProcessError(
                f"not ready after {self._startup_timeout:g}s"
            ) from None
        except BaseException:
            await self._teardown()
            raise

    async def stop(self) -> None:
        """Stop the process. No-op when already stopped."""
        if self._status is SessionStatus.STOPPED and self._teardown_task is None:
            return
        if self._teardown_task is None:
            self._fire_tracking("stop")
        await self._teardown()

    async def restart(self) -> None:
        """stop() then start() at the last-known root."""
        self._fire_tracking("restart")
        root = self._root
        await self.stop()
        await self.start(root)

    # ── Internals ──

    def _transition(self, target: SessionStatus) -> None:
        validate_transition(self._status, target)
        previous, self._status = self._status, target
        logger.debug("%s status: %s -> %s", self._name, previous.value, target.value)
        self._status_observers.publish(
            StatusChange(previous=previous, current=target, project_root=self._root)
        )

    def _fire_tracking(self, action: str) -> None:
        if self._track is None:
            return
        try:
            self._track(action)
        except Exception:
            logger.exception("%s tracking event '%s' failed", self._name, action)

    def _error_for(self, event: StructuredError) -> SupervisorError:
        if event.code in PORT_BUSY_CODES:
            return PortBusyError(self._port, event.detail)
        if event.code in NO_PROJECT_CODES:
            if event.detail:
                return NoProjectFoundError(self._root, event.detail)
            return NoProjectFoundError(self._root)
        reason = f"{event.code}: {event.detail}" if event.detail else event.code
        return UnexpectedProcessError(reason)

    async def _pump(self, root: str, ready: asyncio.Future) -> None:
        """Read classified output until the process exits."""
        try:
            handle = await self._launcher.launch(root, self._args_provider(root))
        except SupervisorError as exc:
            if not ready.done():
                ready.set_exception(exc)
            return
        except Exception as exc:
            logger.exception("%s launch failed", self._name)
            if not ready.done():
                ready.set_exception(UnexpectedProcessError(f"launch failed: {exc}"))
            return
        self._handle = handle

        try:
            async for event in classify(handle.records(), self._rules):
                if isinstance(event, Ready):
                    if not ready.done():
                        ready.set_result(None)
                        self._transition(SessionStatus.RUNNING)
                        logger.info("%s is ready (pid=%s)", self._name, handle.pid)
                elif isinstance(event, StructuredError):
                    error = self._error_for(event)
                    logger.warning(
                        "%s reported error %s: %s", self._name, event.code, event.detail,
                    )
                    if not ready.done():
                        ready.set_exception(error)
                    else:
                        await self._fail_running(error)
                    return
                else:
                    self._message_observers.publish(event)
            returncode = await handle.wait()
            error = UnexpectedProcessError(
                f"process exited with code {returncode}", returncode,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s output stream failed", self._name)
            error = UnexpectedProcessError(f"output stream failed: {exc}")

        if not ready.done():
            ready.set_exception(error)
        else:
            await self._fail_running(error)

    async def _fail_running(self, error: SupervisorError) -> None:
        """Handle a failure after readiness: report it and tear down."""
        logger.error("%s failed while running: %s", self._name, error)
        # The pump is the caller; keep teardown from cancelling it.
        self._pump_task = None
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("%s error handler failed", self._name)
        await self._teardown()

    async def _teardown(self) -> None:
        task = self._teardown_task
        if task is None:
            if self._status is SessionStatus.STOPPED:
                return
            task = asyncio.create_task(
                self._do_teardown(), name=f"{self._name}-teardown",
            )
            self._teardown_task = task
        await asyncio.shield(task)

    async def _do_teardown(self) -> None:
        try:
            if self._status is SessionStatus.RUNNING:
                self._transition(SessionStatus.STOPPING)

            ready, self._ready = self._ready, None
            if ready is not None and not ready.done():
                ready.set_exception(StartAbortedError(self._root))

            pump, self._pump_task = self._pump_task, None
            if pump is not None and not pump.done():
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)

            handle, self._handle = self._handle, None
            if handle is not None:
                await self._terminate(handle)

            if self._status is not SessionStatus.STOPPED:
                self._transition(SessionStatus.STOPPED)
        finally:
            self._teardown_task = None

    async def _terminate(self, handle: ProcessHandle) -> None:
        """terminate(), wait out the grace period, then kill()."""
        if handle.returncode is not None:
            return
        handle.terminate()
        try:
            await asyncio.wait_for(handle.wait(), timeout=self._stop_timeout)
            logger.info("%s stopped (pid=%s)", self._name, handle.pid)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not exit within %.1fs; killing (pid=%s)",
                self._name, self._stop_timeout, handle.pid,
            )
        handle.kill()
        try:
            await asyncio.wait_for(handle.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "%s (pid=%s) survived kill; releasing supervision anyway",
                self._name, handle.pid,
            )
