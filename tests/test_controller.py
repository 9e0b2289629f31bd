"""SessionController tests: lifecycle, resources and root changes."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from metrowatch.engine.config import SupervisorConfig
from metrowatch.engine.controller import SessionController
from metrowatch.engine.errors import (
    AlreadyActiveError,
    NoProjectFoundError,
    PortBusyError,
    StartAbortedError,
    TunnelSetupError,
)
from metrowatch.engine.models import ErrorKind, SessionStatus, TunnelBehavior
from metrowatch.engine.root_source import RootSource
from metrowatch.engine.subscriptions import Disposable
from metrowatch.engine.telemetry import TelemetryCollector
from metrowatch.engine.triggers import GLOBAL_RELOAD_HOTKEY
from metrowatch.engine.tunnel import PortForwarder, TunnelManager

ROOT = "/work/app"
REMOTE_ROOT = "nuclide://devserver/home/me/app"
READY = '{"type": "initialize_done"}'


class _Tunnels:
    """Tunnel manager double that hands out a fresh Disposable per call."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.opened: list[Disposable] = []
        self.calls: list[tuple[str, TunnelBehavior]] = []

    async def open_tunnel(self, root: str, behavior: TunnelBehavior) -> Disposable:
        self.calls.append((root, behavior))
        if self.error is not None:
            raise self.error
        tunnel = Disposable()
        self.opened.append(tunnel)
        return tunnel


def _metro() -> MagicMock:
    metro = MagicMock()
    metro.reload = AsyncMock(return_value=True)
    return metro


def _controller(
    config, launcher, reporter, prompter, triggers,
    root: str | None = ROOT, tunnels: _Tunnels | None = None, **kwargs,
) -> tuple[SessionController, RootSource, list[SessionStatus]]:
    root_source = RootSource(root)
    controller = SessionController(
        config,
        root_source,
        reporter=reporter,
        prompter=prompter,
        launcher=launcher,
        tunnels=tunnels or _Tunnels(),
        triggers=triggers,
        metro_client=kwargs.pop("metro_client", _metro()),
        **kwargs,
    )
    seen: list[SessionStatus] = []
    controller.observe_status(lambda change: seen.append(change.current))
    return controller, root_source, seen


@pytest.mark.asyncio
async def test_start_runs_and_registers_trigger(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, _, seen = _controller(config, launcher, reporter, prompter, triggers)

    await controller.start()

    assert controller.status is SessionStatus.RUNNING
    assert seen == [SessionStatus.STARTING, SessionStatus.RUNNING]
    session = controller.session
    assert session is not None
    assert session.project_root == ROOT
    assert session.status is SessionStatus.RUNNING
    assert session.trigger_registration is not None
    assert triggers.is_registered(GLOBAL_RELOAD_HOTKEY)
    assert reporter.reports == []
    await controller.dispose()


@pytest.mark.asyncio
async def test_launch_order_is_process_then_tunnel_then_trigger(
    config, launcher, reporter, prompter, triggers,
) -> None:
    order = []
    tunnels = _Tunnels()
    real_open = tunnels.open_tunnel

    async def open_tunnel(root, behavior):
        order.append(("tunnel", controller.status, triggers.is_registered(GLOBAL_RELOAD_HOTKEY)))
        return await real_open(root, behavior)

    tunnels.open_tunnel = open_tunnel
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )

    await controller.start(TunnelBehavior.ALWAYS)

    assert order == [("tunnel", SessionStatus.RUNNING, False)]
    assert triggers.is_registered(GLOBAL_RELOAD_HOTKEY)
    assert tunnels.calls == [(ROOT, TunnelBehavior.ALWAYS)]
    await controller.dispose()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_releases_everything(
    config, launcher, reporter, prompter, triggers,
) -> None:
    tunnels = _Tunnels()
    controller, _, seen = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )
    await controller.start()

    await controller.stop()
    await controller.stop()

    assert seen == [
        SessionStatus.STARTING,
        SessionStatus.RUNNING,
        SessionStatus.STOPPING,
        SessionStatus.STOPPED,
    ]
    assert controller.session is None
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)
    assert tunnels.opened[0].disposed
    assert launcher.handle.terminated


@pytest.mark.asyncio
async def test_stop_without_session_is_noop(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, _, seen = _controller(config, launcher, reporter, prompter, triggers)
    await controller.stop()
    assert seen == []
    assert launcher.launches == []


@pytest.mark.asyncio
async def test_start_while_active_raises_without_second_launch(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)
    await controller.start()

    with pytest.raises(AlreadyActiveError):
        await controller.start()

    assert len(launcher.launches) == 1
    assert len(triggers) == 1
    await controller.dispose()


@pytest.mark.asyncio
async def test_start_while_starting_raises(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    launcher.script = []
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)
    first = asyncio.create_task(controller.start())
    await eventually(lambda: bool(launcher.handles))

    with pytest.raises(AlreadyActiveError):
        await controller.start()

    await controller.stop()
    with pytest.raises(StartAbortedError):
        await first
    assert len(launcher.launches) == 1


@pytest.mark.asyncio
async def test_port_busy_is_reported_once(
    config, launcher, reporter, prompter, triggers,
) -> None:
    launcher.script = ["listen EADDRINUSE: address already in use :::8081"]
    controller, _, seen = _controller(config, launcher, reporter, prompter, triggers)

    with pytest.raises(PortBusyError):
        await controller.start()

    assert reporter.kinds == [ErrorKind.PORT_BUSY]
    assert "lsof -i tcp:8081" in reporter.reports[0][1]
    assert controller.session is None
    assert controller.status is SessionStatus.STOPPED
    assert seen == [SessionStatus.STARTING, SessionStatus.STOPPED]
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)


@pytest.mark.asyncio
async def test_no_project_is_reported_with_guidance(
    config, launcher, reporter, prompter, triggers,
) -> None:
    launcher.error = NoProjectFoundError(ROOT)
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)

    with pytest.raises(NoProjectFoundError):
        await controller.start()

    assert reporter.kinds == [ErrorKind.NO_PROJECT_FOUND]
    assert "node_modules" in reporter.reports[0][1]
    assert controller.session is None


@pytest.mark.asyncio
async def test_start_after_failure_is_allowed(
    config, launcher, reporter, prompter, triggers,
) -> None:
    launcher.error = NoProjectFoundError(ROOT)
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)
    with pytest.raises(NoProjectFoundError):
        await controller.start()

    launcher.error = None
    await controller.start()

    assert controller.status is SessionStatus.RUNNING
    await controller.dispose()


@pytest.mark.asyncio
async def test_stop_during_start_aborts_without_report(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    launcher.script = []
    tunnels = _Tunnels()
    controller, _, seen = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )
    start = asyncio.create_task(controller.start())
    await eventually(lambda: bool(launcher.handles))

    await controller.stop()

    with pytest.raises(StartAbortedError):
        await start
    assert seen == [SessionStatus.STARTING, SessionStatus.STOPPED]
    assert reporter.reports == []
    assert tunnels.calls == []
    assert controller.session is None
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)


@pytest.mark.asyncio
async def test_tunnel_failure_is_reported_and_bundler_keeps_running(
    config, launcher, reporter, prompter, triggers,
) -> None:
    tunnels = _Tunnels(error=TunnelSetupError(REMOTE_ROOT, "connection refused"))
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers,
        root=REMOTE_ROOT, tunnels=tunnels,
    )

    await controller.start(TunnelBehavior.ALWAYS)

    assert reporter.kinds == [ErrorKind.TUNNEL_SETUP_FAILURE]
    assert controller.status is SessionStatus.RUNNING
    assert controller.session.tunnel is None
    assert triggers.is_registered(GLOBAL_RELOAD_HOTKEY)
    await controller.dispose()


@pytest.mark.asyncio
async def test_restart_acquires_fresh_tunnel_and_trigger(
    config, launcher, reporter, prompter, triggers,
) -> None:
    tunnels = _Tunnels()
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )
    await controller.start(TunnelBehavior.ALWAYS)
    first_registration = controller.session.trigger_registration

    await controller.restart()

    session = controller.session
    assert controller.status is SessionStatus.RUNNING
    assert len(launcher.handles) == 2
    assert launcher.handles[0].terminated
    assert len(tunnels.opened) == 2
    assert tunnels.opened[0].disposed
    assert session.tunnel is tunnels.opened[1]
    assert not session.tunnel.disposed
    assert first_registration.disposed
    assert session.trigger_registration is not first_registration
    assert len(triggers) == 1
    assert tunnels.calls[1][1] is TunnelBehavior.ALWAYS
    await controller.dispose()


@pytest.mark.asyncio
async def test_restart_rebinds_the_same_tunnel_port(
    launcher, reporter, prompter, triggers,
) -> None:
    placeholder = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = placeholder.sockets[0].getsockname()[1]
    placeholder.close()
    await placeholder.wait_closed()
    config = SupervisorConfig(
        stop_timeout=0.1, editor="code", tunnel_ports=[port], tunnel_host="127.0.0.1",
    )
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers,
        root=REMOTE_ROOT, tunnels=TunnelManager(config, prompter),
    )
    await controller.start(TunnelBehavior.ALWAYS)
    first = controller.session.tunnel

    await controller.restart()

    assert reporter.reports == []
    assert first.disposed
    assert isinstance(controller.session.tunnel, PortForwarder)
    assert controller.session.tunnel.bound_ports == [port]
    await controller.dispose()


@pytest.mark.asyncio
async def test_restart_without_session_starts(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)
    await controller.restart()
    assert controller.status is SessionStatus.RUNNING
    await controller.dispose()


@pytest.mark.asyncio
async def test_root_change_stops_before_offering_restart(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    log = prompter.log
    controller, root_source, _ = _controller(config, launcher, reporter, prompter, triggers)
    controller.observe_status(lambda change: log.append(("status", change.current)))
    await controller.start()

    root_source.set("/work/other")
    await eventually(lambda: bool(prompter.offers))

    assert log[-3:] == [
        ("status", SessionStatus.STOPPING),
        ("status", SessionStatus.STOPPED),
        ("offer", "/work/other"),
    ]
    assert controller.session is None
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)

    _, accept = prompter.offers[0]
    await accept()

    assert controller.status is SessionStatus.RUNNING
    assert launcher.launches[-1][0] == "/work/other"
    await controller.dispose()


@pytest.mark.asyncio
async def test_root_change_during_pending_start_waits_for_start(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    launcher.script = []
    controller, root_source, seen = _controller(config, launcher, reporter, prompter, triggers)

    start = asyncio.create_task(controller.start())
    await eventually(lambda: bool(launcher.handles))
    root_source.set("/work/a")
    root_source.set("/work/b")
    await asyncio.sleep(0.02)
    assert prompter.offers == []
    assert controller.status is SessionStatus.STARTING

    launcher.handle.emit(READY)
    await start
    await eventually(lambda: bool(prompter.offers))
    await asyncio.sleep(0.02)

    assert seen == [
        SessionStatus.STARTING,
        SessionStatus.RUNNING,
        SessionStatus.STOPPING,
        SessionStatus.STOPPED,
    ]
    assert [root for root, _ in prompter.offers] == ["/work/b"]

    launcher.script = [READY]
    await prompter.offers[0][1]()
    assert launcher.launches[-1][0] == "/work/b"
    await controller.dispose()


@pytest.mark.asyncio
async def test_rapid_root_changes_stop_once_and_offer_latest(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    controller, root_source, seen = _controller(config, launcher, reporter, prompter, triggers)
    await controller.start()

    root_source.set("/work/a")
    root_source.set("/work/b")
    root_source.set("/work/c")
    await eventually(lambda: bool(prompter.offers))
    await asyncio.sleep(0.02)

    assert seen == [
        SessionStatus.STARTING,
        SessionStatus.RUNNING,
        SessionStatus.STOPPING,
        SessionStatus.STOPPED,
    ]
    assert len(launcher.handles) == 1
    assert [root for root, _ in prompter.offers] == ["/work/c"]
    await controller.dispose()


@pytest.mark.asyncio
async def test_accepted_offer_asks_about_tunnel(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    tunnels = _Tunnels()
    controller, root_source, _ = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )
    await controller.start(TunnelBehavior.NEVER)

    root_source.set(REMOTE_ROOT)
    await eventually(lambda: bool(prompter.offers))
    await prompter.offers[0][1]()

    assert tunnels.calls[-1] == (REMOTE_ROOT, TunnelBehavior.ASK)
    await controller.dispose()


@pytest.mark.asyncio
async def test_root_change_while_stopped_is_ignored(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, root_source, seen = _controller(config, launcher, reporter, prompter, triggers)

    root_source.set("/work/other")
    await asyncio.sleep(0.02)

    assert prompter.offers == []
    assert seen == []


@pytest.mark.asyncio
async def test_same_root_is_not_a_change(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, root_source, _ = _controller(config, launcher, reporter, prompter, triggers)
    await controller.start()

    root_source.set(ROOT)
    await asyncio.sleep(0.02)

    assert controller.status is SessionStatus.RUNNING
    assert prompter.offers == []
    await controller.dispose()


@pytest.mark.asyncio
async def test_crash_while_running_is_reported_and_released(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    tunnels = _Tunnels()
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, tunnels=tunnels,
    )
    await controller.start()

    launcher.handle.exit(1)
    await eventually(lambda: controller.session is None)

    assert reporter.kinds == [ErrorKind.UNEXPECTED_PROCESS_ERROR]
    assert "exited with code 1" in reporter.reports[0][1]
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)
    assert tunnels.opened[0].disposed
    assert controller.status is SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_trigger_reloads_app(
    config, launcher, reporter, prompter, triggers, eventually,
) -> None:
    metro = _metro()
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, metro_client=metro,
    )
    await controller.start()

    assert triggers.fire(GLOBAL_RELOAD_HOTKEY)
    await eventually(lambda: metro.reload.await_count == 1)
    await controller.dispose()


@pytest.mark.asyncio
async def test_reload_ignored_when_not_running(
    config, launcher, reporter, prompter, triggers,
) -> None:
    metro = _metro()
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, metro_client=metro,
    )
    assert await controller.reload_app() is False
    metro.reload.assert_not_awaited()


@pytest.mark.asyncio
async def test_foreign_trigger_binding_is_replaced_and_left_alone_after(
    config, launcher, reporter, prompter, triggers,
) -> None:
    foreign = MagicMock()
    triggers.register(GLOBAL_RELOAD_HOTKEY, foreign)
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)

    await controller.start()
    assert len(triggers) == 1
    triggers.fire(GLOBAL_RELOAD_HOTKEY)
    foreign.assert_not_called()

    await controller.dispose()
    assert not triggers.is_registered(GLOBAL_RELOAD_HOTKEY)


@pytest.mark.asyncio
async def test_dispose_stops_and_detaches_from_root(
    config, launcher, reporter, prompter, triggers,
) -> None:
    controller, root_source, _ = _controller(config, launcher, reporter, prompter, triggers)
    await controller.start()

    await controller.dispose()
    root_source.set("/work/other")
    await asyncio.sleep(0.02)

    assert controller.status is SessionStatus.STOPPED
    assert prompter.offers == []
    assert launcher.handle.terminated


@pytest.mark.asyncio
async def test_tracking_events_are_recorded(
    config, launcher, reporter, prompter, triggers, tmp_path, eventually,
) -> None:
    telemetry = TelemetryCollector(tmp_path / "telemetry.db")
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, telemetry=telemetry,
    )

    await controller.start()
    await controller.restart()
    await controller.stop()

    expected = {"metro:restart": 1, "metro:start": 2, "metro:stop": 2}
    await eventually(lambda: telemetry.get_summary("1h") == expected)
    await controller.dispose()


@pytest.mark.asyncio
async def test_tracking_writes_run_off_the_event_loop(
    config, launcher, reporter, prompter, triggers,
) -> None:
    telemetry = MagicMock()
    threads: list[int] = []
    telemetry.record_event.side_effect = lambda *_: threads.append(threading.get_ident())
    controller, _, _ = _controller(
        config, launcher, reporter, prompter, triggers, telemetry=telemetry,
    )

    await controller.start()
    await controller.dispose()

    names = sorted(c.args[0] for c in telemetry.record_event.call_args_list)
    assert names == ["metro:start", "metro:stop"]
    assert threading.get_ident() not in threads


@pytest.mark.asyncio
async def test_failing_reporter_does_not_break_start(
    config, launcher, prompter, triggers,
) -> None:
    reporter = MagicMock()
    reporter.report.side_effect = RuntimeError("ui gone")
    launcher.script = ["EADDRINUSE"]
    controller, _, _ = _controller(config, launcher, reporter, prompter, triggers)

    with pytest.raises(PortBusyError):
        await controller.start()
    reporter.report.assert_called_once()
    assert controller.session is None
