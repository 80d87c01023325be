"""Local event bus used by both the host element and the guest runtime."""

import asyncio
import inspect
from collections import deque
from collections.abc import Callable

from loguru import logger

DEFAULT_EVENT_BUFFER_LIMIT: int = 100

EventHandler = Callable[[object], object]


class EventEmitter:
    """Named-event dispatcher with replay for early events.

    Events emitted while a name has no listener are buffered (up to
    ``buffer_limit`` per name, oldest dropped) and replayed in order to the first
    listener that subscribes to that name.
    """

    _listeners: dict[str, list[EventHandler]]
    _buffers: dict[str, deque[object]]
    _buffer_limit: int
    _log_prefix: str
    _tasks: set["asyncio.Task[object]"]

    def __init__(self, buffer_limit: int = DEFAULT_EVENT_BUFFER_LIMIT, log_prefix: str = "[enclave]") -> None:
        """Initialize an empty emitter.

        :param buffer_limit: Maximum buffered events per name; ``0`` disables buffering.
        :param log_prefix: Component prefix used in diagnostics.
        """
        self._listeners = {}
        self._buffers = {}
        self._buffer_limit = buffer_limit
        self._log_prefix = log_prefix
        self._tasks = set()

    def listener_count(self, name: str) -> int:
        """Return the number of listeners for ``name``."""
        return len(self._listeners.get(name, []))

    def buffered_count(self, name: str) -> int:
        """Return the number of events waiting for a first listener on ``name``."""
        return len(self._buffers.get(name, ()))

    def on(self, name: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``name``.

        :param name: Event name.
        :param handler: Called with the event data.
        :returns: Callable that removes the subscription.
        """
        handlers: list[EventHandler] = self._listeners.setdefault(name, [])
        handlers.append(handler)

        buffered: deque[object] | None = self._buffers.pop(name, None)
        if buffered is not None:
            for data in buffered:
                self._invoke(name, handler, data)

        def dispose() -> None:
            self.off(name, handler)

        return dispose

    def off(self, name: str, handler: EventHandler) -> None:
        """Remove one subscription. Unknown handlers are ignored."""
        handlers: list[EventHandler] | None = self._listeners.get(name)
        if handlers is None:
            return
        if handler in handlers:
            handlers.remove(handler)
        if len(handlers) == 0:
            del self._listeners[name]

    def emit(self, name: str, data: object = None) -> int:
        """Dispatch ``data`` to every listener of ``name``.

        :param name: Event name.
        :param data: Event payload.
        :returns: Number of listeners invoked; ``0`` means the event was buffered.
        """
        handlers: list[EventHandler] = list(self._listeners.get(name, []))
        if len(handlers) == 0:
            self._buffer(name, data)
            return 0

        for handler in handlers:
            self._invoke(name, handler, data)
        return len(handlers)

    def _buffer(self, name: str, data: object) -> None:
        if self._buffer_limit <= 0:
            return
        buffered: deque[object] = self._buffers.setdefault(name, deque(maxlen=self._buffer_limit))
        if len(buffered) == self._buffer_limit:
            logger.warning(f"{self._log_prefix} Event buffer for '{name}' is full, dropping oldest event")
        buffered.append(data)

    def _invoke(self, name: str, handler: EventHandler, data: object) -> None:
        try:
            result: object = handler(data)
        except Exception:
            logger.exception(f"{self._log_prefix} Error in event handler for '{name}'")
            return
        if inspect.isawaitable(result) is True:
            task: asyncio.Task[object] = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda done: self._finish_task(name, done))

    def _finish_task(self, name: str, task: "asyncio.Task[object]") -> None:
        self._tasks.discard(task)
        if task.cancelled() is True:
            return
        exc: BaseException | None = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"{self._log_prefix} Error in async event handler for '{name}'")

    def clear(self) -> None:
        """Drop every listener, buffered event and pending handler task."""
        self._listeners.clear()
        self._buffers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
