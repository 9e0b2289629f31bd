"""Process-scoped registry of global triggers (e.g. a reload hotkey).

A trigger id can be bound to at most one handler. Hosts map a key press
or command to fire(); the supervisor only registers and unregisters.
"""
from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

GLOBAL_RELOAD_HOTKEY = "CmdOrCtrl+Alt+R"


class TriggerRegistry:
    """Single-instance triggers keyed by id."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[], None]] = {}

    def register(self, trigger_id: str, handler: Callable[[], None]) -> bool:
        """Bind *handler* to *trigger_id*. Returns False if already bound."""
        if trigger_id in self._handlers:
            logger.warning("Trigger %s is already registered", trigger_id)
            return False
        self._handlers[trigger_id] = handler
        return True

    def unregister(
        self,
        trigger_id: str,
        handler: Callable[[], None] | None = None,
    ) -> None:
        """Unbind *trigger_id*. With *handler*, only if it is the bound one."""
        if handler is not None and self._handlers.get(trigger_id) is not handler:
            return
        self._handlers.pop(trigger_id, None)

    def is_registered(self, trigger_id: str) -> bool:
        return trigger_id in self._handlers

    def fire(self, trigger_id: str) -> bool:
        """Invoke the handler for *trigger_id*. Returns False if unbound."""
        handler = self._handlers.get(trigger_id)
        if handler is None:
            logger.debug("Trigger %s fired with no handler", trigger_id)
            return False
        try:
            handler()
        except Exception:
            logger.exception("Trigger %s handler failed", trigger_id)
        return True

    def __len__(self) -> int:
        return len(self._handlers)


_registry: TriggerRegistry | None = None


def get_trigger_registry() -> TriggerRegistry:
    """Return the process-wide registry, creating it if needed."""
    global _registry
    if _registry is None:
        _registry = TriggerRegistry()
    return _registry
