"""
Typed publish/subscribe for autosave events.

Listeners are isolated from each other: an exception raised by one is
logged and delivery continues to the rest. Coroutine listeners are
scheduled as tasks on the running loop.
"""

import asyncio
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Set, Union

from portfolio_sync.utils.logging import get_logger


logger = get_logger(__name__)


class SaveEvent(str, Enum):
    """Events published by the autosave scheduler."""

    STATUS_CHANGE = "status_change"
    SAVE = "save"
    CONFLICT = "conflict"
    ERROR = "error"


Listener = Callable[[Dict[str, Any]], Any]


class EventBus:
    """Observer registry keyed by SaveEvent."""

    def __init__(self):
        self._listeners: Dict[SaveEvent, List[Listener]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: Union[SaveEvent, str], listener: Listener) -> Callable[[], None]:
        """
        Subscribe to an event.

        Returns:
            Callable that removes the subscription
        """
        key = SaveEvent(event)
        self._listeners[key].append(listener)
        return lambda: self.off(key, listener)

    def off(self, event: Union[SaveEvent, str], listener: Listener) -> None:
        key = SaveEvent(event)
        if listener in self._listeners[key]:
            self._listeners[key].remove(listener)

    def listener_count(self, event: Union[SaveEvent, str]) -> int:
        return len(self._listeners[SaveEvent(event)])

    def emit(self, event: Union[SaveEvent, str], payload: Dict[str, Any]) -> None:
        """Deliver ``payload`` to every listener of ``event``."""
        key = SaveEvent(event)
        for listener in list(self._listeners[key]):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                logger.exception(f"Error in {key.value} listener")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Error in async event listener", exc_info=error)

    def clear(self) -> None:
        self._listeners.clear()
