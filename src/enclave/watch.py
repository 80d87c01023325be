"""Change notifications for the guest's props bag."""

import asyncio
import inspect
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger

PropChanges = dict[str, tuple[object, object]]
WatchHandler = Callable[[PropChanges], object]


@dataclass
class _Watcher:
    handler: WatchHandler
    keys: frozenset[str] | None


class PropertyWatcher:
    """Track the last value per key and fan out ``{key: (new, old)}`` changes.

    Watchers either see every key or only the keys they asked for. One failing
    watcher is logged and does not stop the others.
    """

    _last_values: dict[str, object]
    _watchers: list[_Watcher]
    _log_prefix: str
    _tasks: set["asyncio.Task[object]"]

    def __init__(self, log_prefix: str = "[enclave-sdk]") -> None:
        self._last_values = {}
        self._watchers = []
        self._log_prefix = log_prefix
        self._tasks = set()

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def watch(
        self,
        keys_or_handler: Iterable[str] | WatchHandler,
        handler: WatchHandler | None = None,
    ) -> Callable[[], None]:
        """Register a watcher.

        Call as ``watch(handler)`` to see every key, or ``watch(keys, handler)`` to
        see only ``keys``.

        :param keys_or_handler: Handler, or the keys to filter on.
        :param handler: Handler when keys are given.
        :returns: Callable that removes the watcher.
        :raises TypeError: If no callable handler is supplied.
        """
        keys: frozenset[str] | None = None
        watch_handler: object = keys_or_handler
        if handler is not None:
            if isinstance(keys_or_handler, str) is True:
                keys = frozenset({keys_or_handler})
            else:
                keys = frozenset(keys_or_handler)
            watch_handler = handler

        if callable(watch_handler) is False:
            raise TypeError("watch() requires a callable handler")

        watcher: _Watcher = _Watcher(watch_handler, keys)
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch

    def seed(self, values: Mapping[str, object]) -> None:
        """Record initial values without notifying anyone."""
        self._last_values.update(values)

    def notify(self, key: str, new_value: object) -> PropChanges:
        """Record ``new_value`` for ``key`` and notify matching watchers.

        :param key: Changed key.
        :param new_value: Value after the change.
        :returns: The change set that was dispatched.
        """
        old_value: object = self._last_values.get(key)
        self._last_values[key] = new_value
        changes: PropChanges = {key: (new_value, old_value)}

        for watcher in list(self._watchers):
            if watcher.keys is not None and key not in watcher.keys:
                continue
            self._invoke(watcher, changes)
        return changes

    def _invoke(self, watcher: _Watcher, changes: PropChanges) -> None:
        try:
            result: object = watcher.handler(dict(changes))
        except Exception:
            logger.exception(f"{self._log_prefix} Error in watch handler for {sorted(changes)}")
            return
        if inspect.isawaitable(result) is True:
            task: asyncio.Task[object] = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._finish_task)

    def _finish_task(self, task: "asyncio.Task[object]") -> None:
        self._tasks.discard(task)
        if task.cancelled() is True:
            return
        exc: BaseException | None = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"{self._log_prefix} Error in async watch handler")

    def clear(self) -> None:
        """Drop every watcher and recorded value."""
        self._watchers.clear()
        self._last_values.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
