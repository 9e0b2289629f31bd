from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest

from metrowatch.engine.collaborators import ErrorReporter, Prompter, RestartCallback
from metrowatch.engine.config import SupervisorConfig
from metrowatch.engine.launcher import ProcessHandle, ProcessLauncher
from metrowatch.engine.models import ErrorKind
from metrowatch.engine.triggers import TriggerRegistry

READY_LINE = '{"type": "initialize_done"}'


class FakeHandle(ProcessHandle):
    """In-memory process: tests push output lines and decide when it exits."""

    def __init__(self, pid: int, lines: list[str], exit_on_terminate: bool = True) -> None:
        self._pid = pid
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        for line in lines:
            self._queue.put_nowait(line)
        self._exited = asyncio.Event()
        self._returncode: int | None = None
        self.exit_on_terminate = exit_on_terminate
        self.terminated = False
        self.killed = False

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def emit(self, line: str) -> None:
        self._queue.put_nowait(line)

    def exit(self, code: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._queue.put_nowait(None)
        self._exited.set()

    async def records(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        await self._exited.wait()
        assert self._returncode is not None
        return self._returncode

    def terminate(self) -> None:
        self.terminated = True
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeLauncher(ProcessLauncher):
    """Hands out FakeHandles preloaded with ``script`` lines."""

    def __init__(self, script: list[str] | None = None) -> None:
        self.script = [READY_LINE] if script is None else script
        self.handles: list[FakeHandle] = []
        self.launches: list[tuple[str, list[str]]] = []
        self.error: Exception | None = None
        self.exit_on_terminate = True

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]

    async def launch(self, root: str, args: list[str]) -> ProcessHandle:
        self.launches.append((root, list(args)))
        if self.error is not None:
            raise self.error
        handle = FakeHandle(
            1000 + len(self.handles), list(self.script), self.exit_on_terminate,
        )
        self.handles.append(handle)
        return handle


class RecordingReporter(ErrorReporter):
    def __init__(self) -> None:
        self.reports: list[tuple[ErrorKind, str]] = []

    def report(self, kind: ErrorKind, detail: str) -> None:
        self.reports.append((kind, detail))

    @property
    def kinds(self) -> list[ErrorKind]:
        return [kind for kind, _ in self.reports]


class ScriptedPrompter(Prompter):
    def __init__(self, accept_tunnel: bool = True, log: list | None = None) -> None:
        self.accept_tunnel = accept_tunnel
        self.questions: list[tuple[str, list[int]]] = []
        self.offers: list[tuple[str | None, RestartCallback]] = []
        self.log = log if log is not None else []

    async def confirm_tunnel(self, root: str, ports: list[int]) -> bool:
        self.questions.append((root, list(ports)))
        return self.accept_tunnel

    def offer_restart(self, root: str | None, accept: RestartCallback) -> None:
        self.log.append(("offer", root))
        self.offers.append((root, accept))


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def prompter() -> ScriptedPrompter:
    return ScriptedPrompter()


@pytest.fixture
def triggers() -> TriggerRegistry:
    return TriggerRegistry()


@pytest.fixture
def config() -> SupervisorConfig:
    return SupervisorConfig(stop_timeout=0.1, editor="code")


@pytest.fixture
def eventually() -> Callable:
    """Poll until a predicate holds, yielding to the event loop in between."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
