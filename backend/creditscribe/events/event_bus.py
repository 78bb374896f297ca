"""
In-process event bus for session and billing telemetry.

Event names are colon separated, e.g. ``session:<id>:billing:charged``.
Subscriptions use the same shape with ``*`` for one segment and ``**`` for
any number of segments. Exact names are kept in a pyee emitter; wildcard
subscriptions are matched against compiled patterns.
"""
import asyncio
import inspect
import logging
import re
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from pyee import EventEmitter

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Any]


def billing_event(session_id: str, event_type: str) -> str:
    return f"session:{session_id}:billing:{event_type}"


def _compile(pattern: str) -> "re.Pattern":
    regex = re.escape(pattern).replace(r"\*\*", ".*").replace(r"\*", "[^:]+")
    return re.compile(f"^{regex}$")


class EventBus:
    """Publishes events to exact and wildcard subscribers and keeps a short history"""

    def __init__(self, history_size: int = 200):
        self._ee = EventEmitter()
        self._wildcards: List[Tuple[str, "re.Pattern", EventHandler]] = []
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.total_events = 0
        self.handler_errors = 0

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler(event_name, data)``; returns an unsubscribe callable"""
        if "*" in pattern:
            entry = (pattern, _compile(pattern), handler)
            self._wildcards.append(entry)

            def unsubscribe():
                if entry in self._wildcards:
                    self._wildcards.remove(entry)
        else:
            self._ee.add_listener(pattern, handler)

            def unsubscribe():
                if handler in self._ee.listeners(pattern):
                    self._ee.remove_listener(pattern, handler)

        return unsubscribe

    def on(self, pattern: str):
        """Decorator form of ``subscribe``"""
        def decorator(func: EventHandler) -> EventHandler:
            self.subscribe(pattern, func)
            return func
        return decorator

    def _handlers_for(self, event_name: str) -> List[EventHandler]:
        handlers = list(self._ee.listeners(event_name))
        handlers.extend(h for _, regex, h in self._wildcards if regex.match(event_name))
        return handlers

    async def emit(self, event_name: str, **data: Any) -> None:
        """Deliver an event to every matching subscriber; handler errors are logged"""
        data.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        self.total_events += 1
        self._history.append({"event": event_name, **data})

        pending = []
        for handler in self._handlers_for(event_name):
            try:
                result = handler(event_name, data)
            except Exception as e:
                self.handler_errors += 1
                logger.error(f"Event handler failed | event={event_name} | error={e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        if pending:
            for outcome in await asyncio.gather(*pending, return_exceptions=True):
                if isinstance(outcome, Exception):
                    self.handler_errors += 1
                    logger.error(f"Async event handler failed | event={event_name} | error={outcome}")

    def recent(self, pattern: str = "**", limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events matching ``pattern``, oldest first"""
        regex = _compile(pattern)
        matched = [e for e in self._history if regex.match(e["event"])]
        return matched[-limit:]

    async def wait_for(self, pattern: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for the next event matching ``pattern``; None on timeout"""
        future = asyncio.get_running_loop().create_future()

        def handler(event_name, data):
            if not future.done():
                future.set_result(data)

        unsubscribe = self.subscribe(pattern, handler)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            unsubscribe()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_events": self.total_events,
            "handler_errors": self.handler_errors,
            "exact_subscriptions": sum(len(self._ee.listeners(n)) for n in self._ee.event_names()),
            "wildcard_subscriptions": len(self._wildcards),
            "history_size": len(self._history),
        }


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the singleton event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
