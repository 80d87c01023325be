"""Tests for the local event bus."""

import asyncio
from collections.abc import Callable

import pytest

from enclave.events import EventEmitter
from tests.fixtures.guest_apps import flush


def test_emit_reaches_every_listener_in_subscription_order() -> None:
    """Invoke listeners in order and report how many ran."""
    emitter: EventEmitter = EventEmitter()
    calls: list[str] = []
    emitter.on("navigate", lambda data: calls.append(f"first:{data}"))
    emitter.on("navigate", lambda data: calls.append(f"second:{data}"))

    delivered: int = emitter.emit("navigate", "/home")
    assert delivered == 2
    assert calls == ["first:/home", "second:/home"]


def test_events_without_listeners_replay_to_the_first_subscriber_only() -> None:
    """Buffer early events, replay them once, then deliver live."""
    emitter: EventEmitter = EventEmitter()
    assert emitter.emit("navigate", "/a") == 0
    assert emitter.emit("navigate", "/b") == 0
    assert emitter.buffered_count("navigate") == 2

    first: list[object] = []
    second: list[object] = []
    emitter.on("navigate", first.append)
    emitter.on("navigate", second.append)
    emitter.emit("navigate", "/c")

    assert first == ["/a", "/b", "/c"]
    assert second == ["/c"]
    assert emitter.buffered_count("navigate") == 0


def test_buffer_is_capped_and_drops_the_oldest_event() -> None:
    """Keep only the newest events once the per-name cap is reached."""
    emitter: EventEmitter = EventEmitter(buffer_limit=3)
    for index in range(5):
        emitter.emit("tick", index)

    received: list[object] = []
    emitter.on("tick", received.append)
    assert received == [2, 3, 4]


def test_zero_buffer_limit_disables_replay() -> None:
    """Drop events outright when buffering is disabled."""
    emitter: EventEmitter = EventEmitter(buffer_limit=0)
    emitter.emit("tick", 1)
    received: list[object] = []
    emitter.on("tick", received.append)
    assert received == []


def test_dispose_and_off_remove_listeners() -> None:
    """Stop delivery after unsubscribing either way."""
    emitter: EventEmitter = EventEmitter()
    received: list[object] = []
    dispose: Callable[[], None] = emitter.on("change", received.append)
    emitter.emit("change", 1)
    dispose()
    dispose()
    assert emitter.listener_count("change") == 0

    emitter.on("change", received.append)
    emitter.off("change", received.append)
    emitter.off("unknown", received.append)
    emitter.emit("change", 2)
    assert received == [1]


def test_failing_listener_does_not_block_the_rest() -> None:
    """Log a listener error and continue with the next listener."""
    emitter: EventEmitter = EventEmitter()
    received: list[object] = []

    def broken(data: object) -> None:
        raise RuntimeError(f"cannot handle {data}")

    emitter.on("save", broken)
    emitter.on("save", received.append)
    assert emitter.emit("save", "draft") == 2
    assert received == ["draft"]


@pytest.mark.asyncio
async def test_async_listeners_run_as_tasks() -> None:
    """Schedule coroutine listeners and keep failures contained."""
    emitter: EventEmitter = EventEmitter()
    received: list[object] = []

    async def record(data: object) -> None:
        await asyncio.sleep(0)
        received.append(data)

    async def broken(data: object) -> None:
        raise RuntimeError("async failure")

    emitter.on("sync", record)
    emitter.on("sync", broken)
    emitter.emit("sync", {"ok": True})
    assert received == []

    await flush()
    assert received == [{"ok": True}]

    emitter.clear()
    assert emitter.listener_count("sync") == 0
