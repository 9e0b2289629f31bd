"""Exception hierarchy for the supervisor.

Specific exceptions for each failure mode. Failures that reach the
error-reporting collaborator carry an ErrorKind.
"""
from __future__ import annotations

from .models import ErrorKind


NO_PROJECT_DESCRIPTION = (
    "Make sure that your current working root (or its ancestor) contains a "
    "`node_modules` directory with react-native installed, or a .buckconfig "
    "file with a `[react-native]` section that has a `server` key."
)


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""
    kind: ErrorKind | None = None


class NoProjectFoundError(SupervisorError):
    """The root has no recognizable project marker."""
    kind = ErrorKind.NO_PROJECT_FOUND

    def __init__(self, root: str | None, detail: str = NO_PROJECT_DESCRIPTION):
        self.root = root
        self.detail = detail
        super().__init__(f"Could not find a bundler project at {root}. {detail}")


class PortBusyError(SupervisorError):
    """The process could not bind its port."""
    kind = ErrorKind.PORT_BUSY

    def __init__(self, port: int | None = None, detail: str = ""):
        self.port = port
        self.detail = detail
        hint_port = port if port is not None else 8081
        super().__init__(
            "The bundler failed to start. This is expected if you are "
            "intentionally running it in a separate terminal. If not, "
            f"`lsof -i tcp:{hint_port}` might help you find the process "
            "using the port."
            + (f" ({detail})" if detail else "")
        )


class UnexpectedProcessError(SupervisorError):
    """Any other launch or runtime failure of the supervised process."""
    kind = ErrorKind.UNEXPECTED_PROCESS_ERROR

    def __init__(self, reason: str, returncode: int | None = None):
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"Unexpected error while running the bundler: {reason}")


class TunnelSetupError(SupervisorError):
    """A tunnel for a remote root could not be established."""
    kind = ErrorKind.TUNNEL_SETUP_FAILURE

    def __init__(self, root: str, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Failed to open tunnel for {root}: {reason}")


class AlreadyActiveError(SupervisorError):
    """start() was called while a session is starting or running."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(
            f"Cannot start: already {status}. Call stop() first."
        )


class StartAbortedError(SupervisorError):
    """A pending start() was abandoned because stop() was requested."""

    def __init__(self, root: str | None):
        self.root = root
        super().__init__(f"Startup at {root} was aborted by stop()")
