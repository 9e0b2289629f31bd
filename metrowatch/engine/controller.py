"""Session controller.

Top-level orchestrator: owns at most one Session (the supervised bundler
plus its tunnel and reload trigger), serializes lifecycle operations, and
reacts to working-root changes.

    NoSession ──start()──> Active(Session) ──stop() / root change / crash──> NoSession

Lifecycle operations run one at a time under an asyncio.Lock. Root-change
reactions queue on the same lock. stop() cancels a pending start before
queueing, so a start waiting on readiness never blocks a stop.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from .classifier import ClassifierRules
from .collaborators import ErrorReporter, Prompter
from .config import SupervisorConfig
from .errors import (
    AlreadyActiveError,
    StartAbortedError,
    SupervisorError,
    TunnelSetupError,
)
from .launcher import ProcessLauncher, SubprocessLauncher, editor_args
from .log_tailer import LogTailer
from .metro_client import MetroClient
from .models import LogMessage, Session, SessionStatus, StatusChange, TunnelBehavior
from .root_source import RootSource
from .subscriptions import Disposable, ReleaseStack, Subscription
from .telemetry import TelemetryCollector
from .triggers import GLOBAL_RELOAD_HOTKEY, TriggerRegistry, get_trigger_registry
from .tunnel import PortForwarder, TunnelManager

logger = logging.getLogger(__name__)

TRACKING_PREFIX = "metro"


class SessionController:
    """Supervises the bundler for the current working root."""

    def __init__(
        self,
        config: SupervisorConfig,
        root_source: RootSource,
        *,
        reporter: ErrorReporter,
        prompter: Prompter,
        launcher: ProcessLauncher | None = None,
        tunnels: TunnelManager | None = None,
        triggers: TriggerRegistry | None = None,
        metro_client: MetroClient | None = None,
        telemetry: TelemetryCollector | None = None,
        trigger_id: str = GLOBAL_RELOAD_HOTKEY,
    ) -> None:
        self._config = config
        self._root_source = root_source
        self._reporter = reporter
        self._prompter = prompter
        self._tunnels = tunnels or TunnelManager(config, prompter)
        self._triggers = triggers or get_trigger_registry()
        self._metro = metro_client or MetroClient(config.host, config.port)
        self._trigger_id = trigger_id
        if telemetry is None and config.telemetry_db_path:
            telemetry = TelemetryCollector(Path(config.telemetry_db_path).expanduser())
        self._telemetry = telemetry

        self._tailer = LogTailer(
            "Metro",
            launcher or SubprocessLauncher(config),
            root_provider=lambda: root_source.value,
            args_provider=lambda root: editor_args(root, config),
            rules=ClassifierRules.from_config(config),
            port=config.port,
            stop_timeout=config.stop_timeout,
            startup_timeout=config.startup_timeout,
            on_error=self._report,
            track=self._track,
        )

        self._session: Session | None = None
        self._last_behavior = config.default_tunnel_behavior
        self._lock = asyncio.Lock()
        self._startup_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._recording: set[asyncio.Task] = set()
        self._disposed = False

        self._subscriptions = ReleaseStack("controller subscriptions")
        tailer_sub = self._tailer.observe_status(self._on_tailer_status)
        root_sub = root_source.subscribe(self._on_root_changed)
        self._subscriptions.add("root changes", root_sub.unsubscribe)
        self._subscriptions.add("tailer status", tailer_sub.unsubscribe)

    # ── Observation ──

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._tailer.status

    @property
    def tailer(self) -> LogTailer:
        return self._tailer

    @property
    def telemetry(self) -> TelemetryCollector | None:
        return self._telemetry

    def observe_status(self, callback: Callable[[StatusChange], None]) -> Subscription:
        return self._tailer.observe_status(callback)

    def observe_messages(self, callback: Callable[[LogMessage], None]) -> Subscription:
        return self._tailer.observe_messages(callback)

    # ── Lifecycle ──

    async def start(self, behavior: TunnelBehavior | None = None) -> None:
        """Start a session at the current root.

        Raises AlreadyActiveError if a session is starting or running.
        Startup failures are reported to the error reporter and re-raised.
        """
        if self._session is not None:
            status = self._session.status.value
            logger.error("start() called while a session is %s", status)
            raise AlreadyActiveError(status)
        behavior = behavior or self._config.default_tunnel_behavior
        root = self._root_source.value
        session = Session(project_root=root, status=SessionStatus.STARTING)
        self._session = session
        self._last_behavior = behavior

        async with self._lock:
            if self._session is not session:
                raise StartAbortedError(root)
            await self._run_startup(self._start_locked(session, behavior), root)

    async def stop(self) -> None:
        """Release the trigger and tunnel, then stop the process. Idempotent."""
        task = self._startup_task
        if task is not None and not task.done():
            logger.info("Aborting pending startup")
            task.cancel()
        elif self._is_queued_start(self._session):
            # start() is still waiting for the lock; it gives up when it gets it.
            self._session = None
        async with self._lock:
            await self._stop_locked()

    async def restart(self) -> None:
        """Restart the process at the same root with fresh tunnel and trigger."""
        if self._session is None:
            await self.start(self._last_behavior)
            return
        async with self._lock:
            session = self._session
            if session is None:
                raise StartAbortedError(self._root_source.value)
            await self._run_startup(
                self._restart_locked(session), session.project_root,
            )

    async def reload_app(self) -> bool:
        """Ask the running bundler to reload connected apps."""
        if self._root_source.value is None:
            return False
        if self._tailer.status is not SessionStatus.RUNNING:
            logger.info("Reload ignored: bundler is %s", self._tailer.status.value)
            return False
        logger.debug("Reloading the app via the global reload trigger")
        return await self._metro.reload()

    async def dispose(self) -> None:
        """Stop the session and drop every subscription."""
        if self._disposed:
            return
        self._disposed = True
        await self.stop()
        self._subscriptions.release()
        if self._recording:
            await asyncio.gather(*self._recording, return_exceptions=True)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Internals ──

    async def _run_startup(
        self, coro: Coroutine[Any, Any, None], root: str | None,
    ) -> None:
        """Run a startup sequence in a task that stop() can cancel."""
        task = asyncio.create_task(coro)
        self._startup_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            self._startup_task = None
        if task.cancelled():
            raise StartAbortedError(root)
        task.result()

    async def _start_locked(self, session: Session, behavior: TunnelBehavior) -> None:
        try:
            await self._tailer.start(session.project_root)
        except BaseException as exc:
            self._session = None
            if isinstance(exc, SupervisorError) and exc.kind is not None:
                self._report(exc)
            raise
        await self._acquire_or_roll_back(session, behavior)

    async def _restart_locked(self, session: Session) -> None:
        await self._release_resources(session)
        try:
            await self._tailer.restart()
        except BaseException as exc:
            self._session = None
            if isinstance(exc, SupervisorError) and exc.kind is not None:
                self._report(exc)
            raise
        await self._acquire_or_roll_back(session, self._last_behavior)

    async def _acquire_or_roll_back(self, session: Session, behavior: TunnelBehavior) -> None:
        try:
            try:
                session.tunnel = await self._tunnels.open_tunnel(
                    session.project_root or "", behavior,
                )
            except TunnelSetupError as exc:
                logger.warning("Tunnel setup failed; bundler keeps running: %s", exc)
                self._report(exc)
            self._register_trigger(session)
        except BaseException:
            logger.warning("Startup of %s interrupted; rolling back", session.project_root)
            await self._release_resources(session)
            await self._tailer.stop()
            self._session = None
            raise
        if self._tailer.status is SessionStatus.STOPPED:
            logger.warning("Bundler exited during startup of %s", session.project_root)
            await self._release_resources(session)
            self._session = None
            return
        logger.info("Session running at %s", session.project_root)

    def _is_queued_start(self, session: Session | None) -> bool:
        return (
            session is not None
            and session.status is SessionStatus.STARTING
            and self._tailer.status is SessionStatus.STOPPED
        )

    async def _stop_locked(self) -> None:
        session = self._session
        if session is not None:
            await self._release_resources(session)
        await self._tailer.stop()
        self._session = None

    def _register_trigger(self, session: Session) -> None:
        trigger_id = self._trigger_id

        def handler() -> None:
            self._spawn(self.reload_app())

        logger.debug("Adding global reload trigger (%s)", trigger_id)
        self._triggers.unregister(trigger_id)
        success = self._triggers.register(trigger_id, handler)
        logger.debug("Trigger register success: %s", success)
        if success:
            session.trigger_registration = Disposable(
                functools.partial(self._triggers.unregister, trigger_id, handler)
            )

    async def _release_resources(self, session: Session) -> None:
        """Trigger first, then tunnel; each release runs even if one fails.

        Returns once a forwarded port is free again, so a restart can bind it.
        """
        tunnel = session.tunnel
        stack = ReleaseStack(f"session {session.project_root}")
        if session.trigger_registration is not None:
            stack.add("reload trigger", session.trigger_registration.dispose)
        if tunnel is not None:
            stack.add("tunnel", tunnel.dispose)
        stack.release()
        session.trigger_registration = None
        session.tunnel = None
        if isinstance(tunnel, PortForwarder):
            await tunnel.wait_closed()

    def _on_tailer_status(self, change: StatusChange) -> None:
        session = self._session
        if session is None:
            return
        session.status = change.current
        if change.current is SessionStatus.STOPPED and not self._lock.locked():
            # The process went away on its own.
            self._spawn(self._release_after_exit(session))

    async def _release_after_exit(self, session: Session) -> None:
        async with self._lock:
            if self._session is not session or self._tailer.status is not SessionStatus.STOPPED:
                return
            logger.info("Bundler exited; releasing session resources")
            await self._release_resources(session)
            self._session = None

    def _on_root_changed(self, root: str | None) -> None:
        if not self._spawn(self._handle_root_change(root)):
            logger.warning("Root changed to %s outside the event loop; ignored", root)

    async def _handle_root_change(self, root: str | None) -> None:
        async with self._lock:
            if self._session is None or self._tailer.status is SessionStatus.STOPPED:
                return
            await self._stop_locked()
            # Later changes may have queued behind this one; start() uses the
            # current value, so that is the root to offer.
            current = self._root_source.value
            logger.warning(
                "Bundler was stopped because the working root changed to %s", current,
            )
            self._prompter.offer_restart(
                current, functools.partial(self.start, TunnelBehavior.ASK),
            )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return False
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def _report(self, error: SupervisorError) -> None:
        if error.kind is None:
            return
        try:
            self._reporter.report(error.kind, str(error))
        except Exception:
            logger.exception("Error reporter failed for %s", error.kind.value)

    def _track(self, action: str) -> None:
        if self._telemetry is None:
            return
        name = f"{TRACKING_PREFIX}:{action}"
        tags = {"root": self._tailer.root}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._telemetry.record_event(name, tags)
            return
        task = loop.create_task(self._record(self._telemetry, name, tags))
        self._recording.add(task)
        task.add_done_callback(self._recording.discard)

    @staticmethod
    async def _record(telemetry: TelemetryCollector, name: str, tags: dict) -> None:
        try:
            await asyncio.to_thread(telemetry.record_event, name, tags)
        except sqlite3.Error:
            logger.exception("Failed to record tracking event %s", name)
