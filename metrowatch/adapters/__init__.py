"""Adapters package - Bridge between the supervisor and its hosts.

Event bus, typed events, and the reporter/prompter implementations that
connect the engine to the console and HTTP frontends.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "BusErrorReporter",
    "BusPrompter",
]

from metrowatch.adapters.event_bus import EventBus
from metrowatch.adapters.reporting import BusErrorReporter, BusPrompter
