"""metrowatch engine: bundler supervision, log tailing and session control."""
from .models import (
    ErrorKind,
    LogMessage,
    ProcessEvent,
    Ready,
    Session,
    SessionStatus,
    StatusChange,
    StructuredError,
    TunnelBehavior,
)
from .config import SupervisorConfig
from .errors import (
    AlreadyActiveError,
    NoProjectFoundError,
    PortBusyError,
    StartAbortedError,
    SupervisorError,
    TunnelSetupError,
    UnexpectedProcessError,
)

__all__ = [
    # Core (lazy import to keep host imports light)
    "SessionController",
    "LogTailer",
    "TunnelManager",
    # Models
    "ErrorKind",
    "LogMessage",
    "ProcessEvent",
    "Ready",
    "Session",
    "SessionStatus",
    "StatusChange",
    "StructuredError",
    "TunnelBehavior",
    # Config
    "SupervisorConfig",
    "load_yaml_config",
    # Errors
    "AlreadyActiveError",
    "NoProjectFoundError",
    "PortBusyError",
    "StartAbortedError",
    "SupervisorError",
    "TunnelSetupError",
    "UnexpectedProcessError",
]


def __getattr__(name: str):
    if name == "SessionController":
        from .controller import SessionController
        return SessionController
    if name == "LogTailer":
        from .log_tailer import LogTailer
        return LogTailer
    if name == "TunnelManager":
        from .tunnel import TunnelManager
        return TunnelManager
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
