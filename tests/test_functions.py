"""Tests for cross-boundary function calls between two managers."""

import asyncio
import gc
import sys
from collections.abc import Callable

import pytest

from enclave.channel import ChannelMessage
from enclave.channel import ChannelPort
from enclave.channel import create_channel
from enclave.errors import CallTimeoutError
from enclave.errors import ChannelClosedError
from enclave.errors import DataCloneError
from enclave.errors import EnclaveProtocolError
from enclave.errors import EnclaveRemoteError
from enclave.errors import FunctionNotFoundError
from enclave.errors import FunctionRegistryFullError
from enclave.functions import FunctionManager
from enclave.functions import PostMessage
from enclave.functions import RemoteFunction
from enclave.protocol import Message
from enclave.protocol import validate_message
from enclave.serialization import SerializedValue
from tests.fixtures.guest_apps import flush


class _ManagerPair:
    """Two managers wired over one channel, recording what the host sends."""

    host: FunctionManager
    guest: FunctionManager
    host_sent: list[Message]

    def __init__(self, call_timeout: float = 1.0, host_max_functions: int = 1000) -> None:
        host_port, guest_port = create_channel()
        self.host_sent = []
        self.host = FunctionManager(
            self._sender(host_port, self.host_sent),
            call_timeout=call_timeout,
            max_functions=host_max_functions,
            name="host",
        )
        self.guest = FunctionManager(self._sender(guest_port, []), call_timeout=call_timeout, name="guest")
        host_port.on_message = self._receiver(self.host)
        guest_port.on_message = self._receiver(self.guest)

    @staticmethod
    def _sender(port: ChannelPort, sent: list[Message]) -> PostMessage:
        def post(message: Message, transfer: list[object]) -> None:
            port.post_message(message, transfer)
            sent.append(message)

        return post

    @staticmethod
    def _receiver(manager: FunctionManager) -> Callable[[ChannelMessage], None]:
        def receive(message: ChannelMessage) -> None:
            validated: Message | None = validate_message(message.data)
            if validated is not None:
                manager.handle_message(validated)

        return receive

    def export_to_host(self, value: object) -> object:
        """Serialize ``value`` on the guest side and decode it on the host side."""
        serialized: SerializedValue = self.guest.serialize(value)
        return self.host.deserialize(serialized.wire)

    def close(self) -> None:
        self.host.cleanup()
        self.guest.cleanup()


@pytest.mark.asyncio
async def test_remote_call_round_trip() -> None:
    """Call a guest function through a host proxy."""
    pair: _ManagerPair = _ManagerPair()
    try:
        exported: dict[str, object] = pair.export_to_host({"add": lambda left, right: left + right})
        add: RemoteFunction = exported["add"]
        assert isinstance(add, RemoteFunction) is True
        assert add.__name__ == "anonymous"

        result: object = await add(2, 3)
        assert result == 5
        assert pair.host.pending_count == 0
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_async_functions_and_callbacks_in_both_directions() -> None:
    """Await async guest functions that call back into the host."""
    pair: _ManagerPair = _ManagerPair()

    async def apply(callback: RemoteFunction, value: int) -> dict[str, object]:
        doubled: object = await callback(value)
        return {"value": doubled, "via": callback.__name__}

    def double(value: int) -> int:
        return value * 2

    try:
        apply_proxy: RemoteFunction = pair.export_to_host(apply)
        result: object = await apply_proxy(double, 21)
        assert result == {"value": 42, "via": "double"}
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_remote_exceptions_keep_type_name_and_message() -> None:
    """Reject the caller with the remote exception's type name and message."""
    pair: _ManagerPair = _ManagerPair()

    def explode() -> None:
        raise ValueError("boom")

    try:
        explode_proxy: RemoteFunction = pair.export_to_host(explode)
        with pytest.raises(EnclaveRemoteError) as exc_info:
            await explode_proxy()
        assert exc_info.value.remote_type_name == "ValueError"
        assert exc_info.value.remote_message == "boom"
        assert str(exc_info.value) == "boom"
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_unanswered_call_times_out_and_clears_pending_state() -> None:
    """Reject with a timeout and leave no pending entry behind."""
    pair: _ManagerPair = _ManagerPair(call_timeout=0.05)

    async def slow() -> None:
        await asyncio.sleep(10)

    try:
        slow_proxy: RemoteFunction = pair.export_to_host(slow)
        with pytest.raises(CallTimeoutError, match="Function call timeout"):
            await slow_proxy()
        assert pair.host.pending_count == 0
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_unknown_and_released_ids_raise_function_not_found() -> None:
    """Fail calls to ids the owner never had or has released."""
    pair: _ManagerPair = _ManagerPair()
    try:
        with pytest.raises(FunctionNotFoundError, match="Function not found: missing"):
            await pair.host.get_or_create_proxy("missing")()

        echo: RemoteFunction = pair.export_to_host(lambda value: value)
        assert await echo("hi") == "hi"

        pair.guest.release_exported([echo.fn_id])
        await flush()
        assert pair.guest.has_function(echo.fn_id) is False

        released_call: asyncio.Future[object] = echo("again")
        assert released_call.done() is True
        with pytest.raises(FunctionNotFoundError):
            await released_call
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_collected_proxy_releases_the_remote_function() -> None:
    """Send a release once the last host proxy is garbage collected."""
    pair: _ManagerPair = _ManagerPair()
    try:
        exported: dict[str, object] = pair.export_to_host({"fn": lambda: None})
        fn_id: str = exported["fn"].fn_id
        assert pair.guest.has_function(fn_id) is True

        del exported
        gc.collect()
        await flush()

        assert pair.guest.has_function(fn_id) is False
        assert fn_id not in pair.guest.tracked_ids
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_cleanup_rejects_pending_calls_and_is_idempotent() -> None:
    """Reject outstanding calls on cleanup and refuse new ones."""
    pair: _ManagerPair = _ManagerPair()

    async def slow() -> None:
        await asyncio.sleep(10)

    slow_proxy: RemoteFunction = pair.export_to_host(slow)
    pending: asyncio.Future[object] = slow_proxy()
    await flush()

    pair.host.cleanup()
    pair.host.cleanup()
    with pytest.raises(ChannelClosedError):
        await pending
    assert pair.host.is_closed is True
    assert pair.host.pending_count == 0

    with pytest.raises(ChannelClosedError):
        await slow_proxy()
    pair.guest.cleanup()


@pytest.mark.asyncio
async def test_owner_cleanup_revokes_proxies_on_the_other_side() -> None:
    """Fail host proxies fast after the guest releases everything it exported."""
    pair: _ManagerPair = _ManagerPair()
    try:
        ping: RemoteFunction = pair.export_to_host(lambda: "pong")
        assert await ping() == "pong"

        pair.guest.cleanup()
        await flush()

        with pytest.raises(FunctionNotFoundError):
            await ping()
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_concurrent_calls_get_distinct_call_ids() -> None:
    """Correlate many in-flight calls without id collisions."""
    pair: _ManagerPair = _ManagerPair()
    try:
        square: RemoteFunction = pair.export_to_host(lambda value: value * value)
        results: list[object] = await asyncio.gather(*(square(index) for index in range(20)))
        assert results == [index * index for index in range(20)]

        call_ids: list[object] = [message["callId"] for message in pair.host_sent if message["type"] == "function-call"]
        assert len(call_ids) == 20
        assert len(set(call_ids)) == 20
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_send_side_failures_reject_immediately_without_leaking() -> None:
    """Reject before sending when arguments overflow the registry or cannot be cloned."""
    pair: _ManagerPair = _ManagerPair(host_max_functions=1)
    try:
        echo: RemoteFunction = pair.export_to_host(lambda *values: len(values))

        overflow: asyncio.Future[object] = echo(lambda: 1, lambda: 2)
        assert overflow.done() is True
        with pytest.raises(FunctionRegistryFullError):
            await overflow

        unclonable: asyncio.Future[object] = echo(lambda: 1, object())
        assert unclonable.done() is True
        with pytest.raises(DataCloneError):
            await unclonable

        assert pair.host.registry_size == 0
        assert pair.host.pending_count == 0
    finally:
        pair.close()


@pytest.mark.asyncio
async def test_results_too_deep_to_decode_reject_the_call() -> None:
    """Reject the caller instead of leaving the call to time out."""
    pair: _ManagerPair = _ManagerPair()
    try:
        pending: asyncio.Future[object] = pair.host.get_or_create_proxy("remote")()
        call_id: object = pair.host_sent[-1]["callId"]

        deep: object = "leaf"
        for _ in range(sys.getrecursionlimit() * 2):
            deep = [deep]
        pair.host.handle_function_response(call_id, True, result=deep)

        assert pending.done() is True
        with pytest.raises(EnclaveProtocolError, match="too deeply"):
            await pending
        assert pair.host.pending_count == 0
    finally:
        pair.close()
