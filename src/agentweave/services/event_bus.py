from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Union[Awaitable[None], None]]


class EventBus:
    """Pub/sub channel for pipeline progress.

    The CLI subscribes to stage events to print its trace. Listeners may be
    plain functions or coroutines; subscribe to "*" to receive everything.
    A failing listener is logged and never interrupts the pipeline.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def publish(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        event = {
            "type": event_type,
            "timestamp": datetime.now().isoformat(),
            **(data or {}),
        }

        targets = [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]
        if not targets:
            return

        pending = []
        for listener in targets:
            try:
                outcome = listener(event)
            except Exception as exc:
                logger.error("Event listener error for %s: %s", event_type, exc)
                continue
            if inspect.isawaitable(outcome):
                pending.append(outcome)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Event listener error for %s: %s", event_type, result)
