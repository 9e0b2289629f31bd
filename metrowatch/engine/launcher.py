"""Process launch collaborator.

The tailer only needs a handle exposing the output records, an exit
signal and termination. SubprocessLauncher provides that with
asyncio.create_subprocess_exec (array-based, no shell); remote roots are
launched over ssh.
"""
from __future__ import annotations

import abc
import asyncio
import configparser
import logging
import os
import shlex
import shutil
import signal
import sys
from collections.abc import AsyncIterator
from pathlib import Path

from . import roots
from .config import SupervisorConfig
from .errors import NoProjectFoundError, UnexpectedProcessError

logger = logging.getLogger(__name__)

# Stream buffer for the output pipe. Longer records are still delivered whole.
STREAM_LIMIT = 1024 * 1024


class ProcessHandle(abc.ABC):
    """A live external process."""

    @property
    @abc.abstractmethod
    def pid(self) -> int | None:
        """OS process id, if known."""

    @property
    @abc.abstractmethod
    def returncode(self) -> int | None:
        """Exit code, or None while the process runs."""

    @abc.abstractmethod
    def records(self) -> AsyncIterator[str]:
        """Output records in arrival order. Ends when output closes."""

    @abc.abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""

    @abc.abstractmethod
    def terminate(self) -> None:
        """Ask the process to exit."""

    @abc.abstractmethod
    def kill(self) -> None:
        """Force the process to exit."""


class ProcessLauncher(abc.ABC):
    """Starts the external process for a root."""

    @abc.abstractmethod
    async def launch(self, root: str, args: list[str]) -> ProcessHandle:
        """Launch the process at *root*. *args* are the editor arguments."""


class SubprocessHandle(ProcessHandle):
    """ProcessHandle over an asyncio subprocess with stdout+stderr merged.

    The process is expected to lead its own process group
    (``start_new_session=True``) so that stop signals reach the children of
    wrapper commands such as npx or yarn.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def records(self) -> AsyncIterator[str]:
        stdout = self._proc.stdout
        if stdout is None:
            return
        pending = b""
        while True:
            try:
                chunk = await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                # EOF; whatever is left is the last, unterminated record.
                tail = pending + exc.partial
                if tail:
                    yield tail.decode("utf-8", errors="replace")
                return
            except asyncio.LimitOverrunError as exc:
                # Record longer than the stream buffer: drain what is buffered
                # and keep reading until its newline.
                pending += await stdout.read(max(exc.consumed, 1))
                continue
            yield (pending + chunk).decode("utf-8", errors="replace")
            pending = b""

    async def wait(self) -> int:
        return await self._proc.wait()

    def _signal_group(self, sig: int) -> bool:
        if not hasattr(os, "killpg"):
            return False
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            return True
        except OSError as exc:
            logger.debug("killpg(%s, %s) failed: %s", self._proc.pid, sig, exc)
            return False
        return True

    def terminate(self) -> None:
        if self._signal_group(signal.SIGTERM):
            return
        try:
            self._proc.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if self._signal_group(getattr(signal, "SIGKILL", signal.SIGTERM)):
            return
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass


def _buckconfig_has_server(path: Path) -> bool:
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except (configparser.Error, OSError, UnicodeDecodeError) as exc:
        logger.debug("Could not parse %s: %s", path, exc)
        return False
    return parser.has_option("react-native", "server")


def find_project_root(start: str | Path) -> Path | None:
    """Walk up from *start* looking for a bundler project marker.

    A directory qualifies if it has node_modules/react-native, or a
    .buckconfig whose [react-native] section has a ``server`` key.
    """
    current = Path(start).expanduser().resolve()
    for candidate in (current, *current.parents):
        if (candidate / "node_modules" / "react-native").is_dir():
            return candidate
        buckconfig = candidate / ".buckconfig"
        if buckconfig.is_file() and _buckconfig_has_server(buckconfig):
            return candidate
    return None


def editor_args(root: str, config: SupervisorConfig) -> list[str]:
    """Editor command the bundler should use to open stack frames.

    Remote roots get a bare editor name that the remote host resolves;
    local roots get the resolved executable.
    """
    editor = config.editor or os.getenv("VISUAL") or os.getenv("EDITOR") or "code"
    parts = shlex.split(editor)
    if roots.is_remote(root):
        return [os.path.basename(parts[0])]
    resolved = shutil.which(parts[0]) or parts[0]
    args = [resolved, *parts[1:]]
    if config.editor_dev_mode:
        args.append("--dev")
    return args


class SubprocessLauncher(ProcessLauncher):
    """Launches the configured bundler command."""

    def __init__(self, config: SupervisorConfig) -> None:
        self._config = config

    def build_command(self, root: str, args: list[str]) -> tuple[list[str], str | None]:
        """Return (argv, cwd) for *root*."""
        command = self._config.launch_command()
        if not roots.is_remote(root):
            return command, roots.get_path(root)
        remote_env = [f"RCT_METRO_PORT={self._config.port}"]
        if args:
            remote_env.append(f"REACT_EDITOR={shlex.quote(' '.join(args))}")
        remote = " ".join([
            "cd", shlex.quote(roots.get_path(root)), "&&",
            *remote_env, shlex.join(command),
        ])
        return ["ssh", "-tt", roots.get_hostname(root), remote], None

    async def launch(self, root: str, args: list[str]) -> ProcessHandle:
        if not roots.is_remote(root):
            project = find_project_root(root)
            if project is None:
                raise NoProjectFoundError(root)
            root = str(project)
        cmd, cwd = self.build_command(root, args)

        env = os.environ.copy()
        env["RCT_METRO_PORT"] = str(self._config.port)
        if args:
            env["REACT_EDITOR"] = " ".join(args)

        logger.info("Launching bundler: %s (cwd=%s)", " ".join(cmd), cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
                cwd=cwd,
                start_new_session=sys.platform != "win32",
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise UnexpectedProcessError(
                f"'{cmd[0]}' not found. Install it or set METRO_COMMAND."
            ) from None
        except OSError as exc:
            raise UnexpectedProcessError(f"failed to launch {cmd[0]}: {exc}") from exc
        logger.info("Bundler started (pid=%d)", proc.pid)
        return SubprocessHandle(proc)
