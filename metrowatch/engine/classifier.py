"""Turns raw bundler output into typed process events.

Each record is one line of output. Lines that parse as a JSON object are
treated as reporter records (``{"type": "initialize_done"}`` and friends);
everything else is matched against plain-text patterns. Every launch gets
its own classify() generator, so the "Ready once" bookkeeping never leaks
across restarts.
"""
from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_ERROR_PATTERNS, DEFAULT_READY_PATTERNS, SupervisorConfig
from .models import LogMessage, ProcessEvent, Ready, StructuredError

_READY_TYPES = {"initialize_done", "ready"}
_FAILED_TYPES = {"initialize_failed"}

_LEVELS = {
    "trace": "debug",
    "debug": "debug",
    "log": "info",
    "info": "info",
    "warn": "warning",
    "warning": "warning",
    "error": "error",
    "fatal": "error",
}


@dataclass
class ClassifierRules:
    """Compiled patterns for plain-text records."""
    ready: list[re.Pattern[str]] = field(default_factory=list)
    errors: dict[str, re.Pattern[str]] = field(default_factory=dict)

    @classmethod
    def from_patterns(
        cls,
        ready_patterns: Iterable[str],
        error_patterns: dict[str, str],
    ) -> ClassifierRules:
        return cls(
            ready=[re.compile(p, re.IGNORECASE) for p in ready_patterns],
            errors={
                code: re.compile(p, re.IGNORECASE)
                for code, p in error_patterns.items()
            },
        )

    @classmethod
    def from_config(cls, config: SupervisorConfig) -> ClassifierRules:
        return cls.from_patterns(config.ready_patterns, config.error_patterns)


DEFAULT_RULES = ClassifierRules.from_patterns(
    DEFAULT_READY_PATTERNS, DEFAULT_ERROR_PATTERNS,
)


def _normalize_level(level: Any) -> str:
    return _LEVELS.get(str(level).lower(), "info")


def _infer_level(text: str) -> str:
    lowered = text.lower()
    if "error" in lowered:
        return "error"
    if "warn" in lowered:
        return "warning"
    return "info"


def _record_text(record: dict[str, Any]) -> str:
    data = record.get("data")
    if isinstance(data, list):
        return " ".join(str(part) for part in data)
    if data is not None:
        return str(data)
    if "message" in record:
        return str(record["message"])
    return json.dumps(record, sort_keys=True)


def _parse_json_record(line: str) -> dict[str, Any] | None:
    if not line.startswith("{"):
        return None
    try:
        value = json.loads(line)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def classify_record(
    line: str,
    rules: ClassifierRules = DEFAULT_RULES,
) -> ProcessEvent | None:
    """Classify one record. Returns None for blank records."""
    line = line.rstrip("\r\n")
    if not line.strip():
        return None

    record = _parse_json_record(line.strip())
    if record is not None:
        record_type = str(record.get("type", ""))
        if record_type in _READY_TYPES:
            return Ready()
        error = record.get("error")
        if record_type in _FAILED_TYPES or (isinstance(error, dict) and error.get("code")):
            error = error if isinstance(error, dict) else {}
            code = str(error.get("code") or record_type)
            detail = str(error.get("message") or error.get("detail") or "")
            return StructuredError(code=code, detail=detail)
        return LogMessage(
            text=_record_text(record),
            level=_normalize_level(record.get("level", "info")),
            payload=record,
        )

    if any(p.search(line) for p in rules.ready):
        return Ready()
    for code, pattern in rules.errors.items():
        if pattern.search(line):
            return StructuredError(code=code, detail=line.strip())
    return LogMessage(text=line, level=_infer_level(line))


async def classify(
    records: AsyncIterator[str],
    rules: ClassifierRules = DEFAULT_RULES,
) -> AsyncIterator[ProcessEvent]:
    """Yield one event per record as soon as it arrives.

    Ready is yielded at most once; later ready-shaped records are dropped.
    """
    seen_ready = False
    async for line in records:
        event = classify_record(line, rules)
        if event is None:
            continue
        if isinstance(event, Ready):
            if seen_ready:
                continue
            seen_ready = True
        yield event
