"""Core data models for the supervisor.

All dataclasses and enums. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class SessionStatus(str, Enum):
    """Supervised process lifecycle states. See lifecycle.py for transitions."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TunnelBehavior(str, Enum):
    """How the controller treats a tunnel when a session starts."""
    ALWAYS = "open_tunnel"
    NEVER = "do_not_open_tunnel"
    ASK = "ask_about_tunnel"


class ErrorKind(str, Enum):
    """Categories delivered to the error-reporting collaborator."""
    NO_PROJECT_FOUND = "no_project_found"
    PORT_BUSY = "port_busy"
    UNEXPECTED_PROCESS_ERROR = "unexpected_process_error"
    TUNNEL_SETUP_FAILURE = "tunnel_setup_failure"


# ── Process events ──


@dataclass(frozen=True)
class LogMessage:
    """A plain line of process output."""
    text: str
    level: str = "info"
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ready:
    """The process finished initializing and is serving requests."""


@dataclass(frozen=True)
class StructuredError:
    """A record carrying an embedded error code."""
    code: str
    detail: str = ""


ProcessEvent = Union[LogMessage, Ready, StructuredError]


# ── Status ──


@dataclass(frozen=True)
class StatusChange:
    """One status transition, as seen by observers."""
    previous: SessionStatus
    current: SessionStatus
    project_root: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class Session:
    """One supervised run plus the resources it exclusively owns.

    The tunnel and the trigger registration are only ever released by the
    controller that created the session.
    """
    project_root: str | None
    status: SessionStatus = SessionStatus.STOPPED
    tunnel: Any | None = None
    trigger_registration: Any | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.STARTING, SessionStatus.RUNNING)
