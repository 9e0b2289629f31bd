"""Event types published to hosts (console, HTTP server).

Each event is a typed dataclass; event_to_dict / dict_to_event convert
to and from the plain dicts sent over SSE.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SupervisorEvent:
    """Base event from the supervisor."""
    event_type: str = ""
    project_root: str | None = None


@dataclass
class StatusChanged(SupervisorEvent):
    event_type: str = "status_changed"
    previous: str = ""
    current: str = ""
    timestamp: float = 0.0


@dataclass
class ProcessOutput(SupervisorEvent):
    event_type: str = "process_output"
    text: str = ""
    level: str = "info"


@dataclass
class ErrorReported(SupervisorEvent):
    event_type: str = "error_reported"
    kind: str = ""
    detail: str = ""


@dataclass
class RestartOffered(SupervisorEvent):
    """The bundler was stopped by a root change; the user may start it again."""
    event_type: str = "restart_offered"
    offer_id: str = ""
    message: str = ""


@dataclass
class TunnelQuestion(SupervisorEvent):
    """The supervisor is asking whether to open a tunnel."""
    event_type: str = "tunnel_question"
    request_id: str = ""
    ports: list = field(default_factory=list)


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[SupervisorEvent]] = {
    "status_changed": StatusChanged,
    "process_output": ProcessOutput,
    "error_reported": ErrorReported,
    "restart_offered": RestartOffered,
    "tunnel_question": TunnelQuestion,
}


def event_to_dict(event: SupervisorEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" key on the wire, "event_type" on the dataclass
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> SupervisorEvent:
    """Convert a wire dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, SupervisorEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
