"""Bidirectional function calls across the boundary.

Each side owns one :class:`FunctionManager`. It exports local callables as tokens,
turns the peer's tokens into :class:`RemoteFunction` proxies, correlates calls with
responses by ``callId`` and runs the release protocol that lets the owner drop
functions nobody can reach anymore.
"""

import asyncio
import inspect
import uuid
import weakref
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger

from enclave.errors import CallTimeoutError
from enclave.errors import ChannelClosedError
from enclave.errors import EnclaveProtocolError
from enclave.errors import EnclaveRemoteError
from enclave.errors import FunctionNotFoundError
from enclave.errors import ResourceLimitError
from enclave.errors import TransportError
from enclave.protocol import MESSAGE_FUNCTION_CALL
from enclave.protocol import MESSAGE_FUNCTION_RELEASE
from enclave.protocol import MESSAGE_FUNCTION_RELEASE_BATCH
from enclave.protocol import MESSAGE_FUNCTION_RESPONSE
from enclave.protocol import Message
from enclave.protocol import function_call_message
from enclave.protocol import function_release_batch_message
from enclave.protocol import function_release_message
from enclave.protocol import function_response_message
from enclave.serialization import DEFAULT_MAX_DEPTH
from enclave.serialization import DEFAULT_MAX_FUNCTIONS
from enclave.serialization import SerializedValue
from enclave.serialization import deserialize_value
from enclave.serialization import serialize_value

DEFAULT_CALL_TIMEOUT: float = 5.0
FUNCTION_NOT_FOUND_TYPE_NAME: str = "FunctionNotFoundError"

PostMessage = Callable[[Message, list[object]], None]


@dataclass
class PendingCall:
    """One outbound call waiting for its response."""

    call_id: str
    fn_id: str
    future: "asyncio.Future[object]"
    timer: asyncio.TimerHandle


def _finalize_remote_function(manager_ref: "weakref.ReferenceType[FunctionManager]", fn_id: str) -> None:
    """Tell the owner that the last local proxy for ``fn_id`` is gone.

    :param manager_ref: Weak reference to the owning manager.
    :param fn_id: Remote function id.
    """
    manager: FunctionManager | None = manager_ref()
    if manager is None:
        return
    manager.release_remote_safely(fn_id)


class RemoteFunction:
    """Callable stand-in for a function owned by the peer.

    Calling it sends ``function-call`` immediately and returns a future for the
    result.
    """

    _manager: "FunctionManager"
    _fn_id: str
    _name: str
    _finalizer: weakref.finalize

    def __init__(self, manager: "FunctionManager", fn_id: str, name: str) -> None:
        """Initialize a proxy.

        :param manager: Manager that correlates calls for this proxy.
        :param fn_id: Remote function id.
        :param name: Display name carried in the token.
        """
        self._manager = manager
        self._fn_id = fn_id
        self._name = name
        self._finalizer = weakref.finalize(self, _finalize_remote_function, weakref.ref(manager), fn_id)
        self._finalizer.atexit = False

    @property
    def fn_id(self) -> str:
        """Return the remote function id."""
        return self._fn_id

    @property
    def __name__(self) -> str:
        return self._name

    def __call__(self, *args: object) -> "asyncio.Future[object]":
        """Invoke the remote function.

        :param args: Positional arguments, serialized like any other value.
        :returns: Future settled by the matching response.
        """
        return self._manager.call_remote(self._fn_id, list(args))

    def __repr__(self) -> str:
        return f"<RemoteFunction {self._name} {self._fn_id}>"


class FunctionManager:
    """Registry, pending calls and release bookkeeping for one side of a channel."""

    _post_message: PostMessage
    _call_timeout: float
    _max_depth: int
    _max_functions: int
    _name: str
    _registry: dict[str, Callable[..., object]]
    _tracked: set[str]
    _revoked: set[str]
    _pending: dict[str, PendingCall]
    _proxy_cache: "weakref.WeakValueDictionary[str, RemoteFunction]"
    _tasks: set["asyncio.Task[None]"]
    _is_closed: bool

    def __init__(
        self,
        post_message: PostMessage,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_functions: int = DEFAULT_MAX_FUNCTIONS,
        name: str = "enclave",
    ) -> None:
        """Initialize a manager.

        :param post_message: Sends ``(message, transfer)`` to the peer; may raise
            :class:`~enclave.errors.TransportError`.
        :param call_timeout: Seconds to wait for each response.
        :param max_depth: Serialization depth limit.
        :param max_functions: Cap on live exported functions.
        :param name: Component name used in log lines.
        """
        self._post_message = post_message
        self._call_timeout = call_timeout
        self._max_depth = max_depth
        self._max_functions = max_functions
        self._name = name
        self._registry = {}
        self._tracked = set()
        self._revoked = set()
        self._pending = {}
        self._proxy_cache = weakref.WeakValueDictionary()
        self._tasks = set()
        self._is_closed = False

    @property
    def is_closed(self) -> bool:
        """Report whether :meth:`cleanup` ran."""
        return self._is_closed

    @property
    def registry_size(self) -> int:
        """Return the number of live exported functions."""
        return len(self._registry)

    @property
    def pending_count(self) -> int:
        """Return the number of calls waiting for a response."""
        return len(self._pending)

    @property
    def revoked_count(self) -> int:
        """Return the number of peer ids revoked while a local proxy is alive."""
        return len(self._revoked)

    @property
    def tracked_ids(self) -> frozenset[str]:
        """Return ids this side exported and has not released."""
        return frozenset(self._tracked)

    def has_function(self, fn_id: str) -> bool:
        """Check whether ``fn_id`` is still callable by the peer."""
        return fn_id in self._registry

    def serialize(self, value: object) -> SerializedValue:
        """Encode ``value`` with this side's registry.

        :param value: Runtime value.
        :returns: Serialized value.
        :raises ResourceLimitError: If a serialization guard trips.
        """
        return serialize_value(
            value,
            self._registry,
            self._tracked,
            max_depth=self._max_depth,
            max_functions=self._max_functions,
        )

    def deserialize(self, wire: object) -> object:
        """Decode a wire value, turning tokens into cached proxies.

        :param wire: Wire value.
        :returns: Runtime value.
        :raises EnclaveProtocolError: If the wire value is malformed.
        """
        return deserialize_value(wire, self.get_or_create_proxy)

    def get_or_create_proxy(self, fn_id: str, name: str = "anonymous") -> RemoteFunction:
        """Get a cached proxy for a remote function or create a new one.

        :param fn_id: Remote function id.
        :param name: Display name.
        :returns: Proxy callable.
        """
        cached: RemoteFunction | None = self._proxy_cache.get(fn_id)
        if cached is not None:
            return cached

        created: RemoteFunction = RemoteFunction(self, fn_id, name)
        self._proxy_cache[fn_id] = created
        return created

    def call_remote(self, fn_id: str, args: list[object]) -> "asyncio.Future[object]":
        """Send one ``function-call`` and return a future for its result.

        Failures before the call is on the wire reject the returned future
        immediately instead of raising.

        :param fn_id: Remote function id.
        :param args: Positional arguments.
        :returns: Future resolved with the deserialized result.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        future: asyncio.Future[object] = loop.create_future()

        if self._is_closed is True:
            future.set_exception(ChannelClosedError(f"Cannot call {fn_id}: channel is closed"))
            return future

        if fn_id in self._revoked:
            future.set_exception(FunctionNotFoundError(f"Function not found: {fn_id} (released)"))
            return future

        try:
            serialized: SerializedValue = self.serialize(args)
        except ResourceLimitError as exc:
            future.set_exception(exc)
            return future

        call_id: str = str(uuid.uuid4())
        timer: asyncio.TimerHandle = loop.call_later(self._call_timeout, self._expire_call, call_id)
        self._pending[call_id] = PendingCall(call_id, fn_id, future, timer)

        try:
            self._post_message(function_call_message(call_id, fn_id, serialized.wire), serialized.transferables)
        except TransportError as exc:
            self._pending.pop(call_id, None)
            timer.cancel()
            self.release_functions(serialized.function_ids)
            future.set_exception(exc)
        return future

    def _expire_call(self, call_id: str) -> None:
        pending: PendingCall | None = self._pending.pop(call_id, None)
        if pending is None:
            return
        if pending.future.done() is False:
            pending.future.set_exception(CallTimeoutError(f"Function call timeout: {pending.fn_id}"))

    def handle_function_response(
        self,
        call_id: str,
        success: bool,
        result: object = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Settle the pending call ``call_id``.

        Unknown or already-settled ids are ignored.

        :param call_id: Correlation id.
        :param success: Whether the remote function returned normally.
        :param result: Serialized result.
        :param error: Remote error message.
        :param error_type: Remote exception type name.
        """
        pending: PendingCall | None = self._pending.pop(call_id, None)
        if pending is None:
            return
        pending.timer.cancel()
        if pending.future.done() is True:
            return

        if success is False:
            pending.future.set_exception(_remote_call_error(error, error_type))
            return

        try:
            value: object = self.deserialize(result)
        except EnclaveProtocolError as exc:
            pending.future.set_exception(exc)
            return
        pending.future.set_result(value)

    async def handle_function_call(self, call_id: str, fn_id: str, params: list[object]) -> None:
        """Run a local function on behalf of the peer and send the response.

        Never raises; every failure becomes a failure response.

        :param call_id: Correlation id chosen by the caller.
        :param fn_id: Local function id.
        :param params: Serialized positional arguments.
        """
        await self._run_call(call_id, fn_id, self._registry.get(fn_id), params)

    async def _run_call(
        self,
        call_id: str,
        fn_id: str,
        fn: Callable[..., object] | None,
        params: list[object],
    ) -> None:
        if fn is None:
            self._send_response(
                function_response_message(
                    call_id,
                    False,
                    error=f"Function not found: {fn_id}",
                    error_type=FUNCTION_NOT_FOUND_TYPE_NAME,
                )
            )
            return

        try:
            args: object = self.deserialize(params)
            result: object = fn(*args)
            if inspect.isawaitable(result) is True:
                result = await result
            serialized: SerializedValue = self.serialize(result)
        except Exception as exc:
            logger.debug(f"[{self._name}] Function {fn_id} raised {type(exc).__name__}: {exc}")
            self._send_response(_failure_response(call_id, exc))
            return

        try:
            self._post_message(function_response_message(call_id, True, result=serialized.wire), serialized.transferables)
        except TransportError as exc:
            self.release_functions(serialized.function_ids)
            self._send_response(_failure_response(call_id, exc))

    def _send_response(self, message: Message) -> None:
        try:
            self._post_message(message, [])
        except TransportError as exc:
            logger.warning(f"[{self._name}] Failed to send function response {message['callId']}: {exc}")

    def handle_message(self, message: Message) -> bool:
        """Dispatch one validated ``function-*`` message.

        :param message: Validated message.
        :returns: ``True`` when the message belonged to this manager.
        """
        message_type: object = message["type"]
        if message_type == MESSAGE_FUNCTION_CALL:
            # Resolve now so a release queued behind this call cannot overtake it.
            fn_id: str = message["fnId"]
            self._spawn(self._run_call(message["callId"], fn_id, self._registry.get(fn_id), message["params"]))
            return True
        if message_type == MESSAGE_FUNCTION_RESPONSE:
            self.handle_function_response(
                message["callId"],
                message["success"],
                result=message.get("result"),
                error=message.get("error"),
                error_type=message.get("errorType"),
            )
            return True
        if message_type == MESSAGE_FUNCTION_RELEASE:
            self.release_function(message["fnId"])
            return True
        if message_type == MESSAGE_FUNCTION_RELEASE_BATCH:
            self.release_functions(message["fnIds"])
            return True
        return False

    def _spawn(self, coroutine: object) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def release_function(self, fn_id: str) -> None:
        """Forget ``fn_id`` on this side.

        Own ids leave the registry and tracked set. Remote ids with a live local
        proxy are marked revoked until that proxy is collected, so calls through it
        fail fast. Any other id is a no-op.

        :param fn_id: Function id.
        """
        owned: bool = self._registry.pop(fn_id, None) is not None
        self._tracked.discard(fn_id)
        if owned is True or self._is_closed is True:
            return
        if fn_id in self._proxy_cache:
            self._revoked.add(fn_id)

    def release_functions(self, fn_ids: Iterable[str]) -> None:
        """Forget several function ids. See :meth:`release_function`."""
        for fn_id in list(fn_ids):
            self.release_function(fn_id)

    def release_exported(self, fn_ids: Iterable[str]) -> None:
        """Release own exported ids and tell the peer.

        :param fn_ids: Ids minted by this side.
        """
        owned_ids: list[str] = [fn_id for fn_id in fn_ids if fn_id in self._registry]
        if len(owned_ids) == 0:
            return
        for fn_id in owned_ids:
            self._registry.pop(fn_id, None)
            self._tracked.discard(fn_id)
        try:
            self._post_message(function_release_batch_message(owned_ids), [])
        except TransportError as exc:
            logger.debug(f"[{self._name}] Could not announce release of {len(owned_ids)} functions: {exc}")

    def release_remote_safely(self, fn_id: str) -> None:
        """Best-effort ``function-release`` used by proxy finalizers.

        :param fn_id: Remote function id.
        """
        if self._is_closed is True:
            return
        if fn_id in self._revoked:
            self._revoked.discard(fn_id)
            return
        try:
            self._post_message(function_release_message(fn_id), [])
        except (TransportError, RuntimeError):
            return

    def cleanup(self) -> None:
        """Release everything and reject outstanding calls. Idempotent."""
        if self._is_closed is True:
            return
        self._is_closed = True

        tracked_ids: list[str] = sorted(self._tracked)
        if len(tracked_ids) > 0:
            try:
                self._post_message(function_release_batch_message(tracked_ids), [])
            except TransportError as exc:
                logger.debug(f"[{self._name}] Could not announce release during cleanup: {exc}")

        pending_calls: list[PendingCall] = list(self._pending.values())
        self._pending.clear()
        for pending in pending_calls:
            pending.timer.cancel()
            if pending.future.done() is False:
                pending.future.set_exception(ChannelClosedError("Function manager cleaned up"))

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._registry.clear()
        self._tracked.clear()
        self._revoked.clear()
        self._proxy_cache.clear()


def _remote_call_error(error: str | None, error_type: str | None) -> Exception:
    """Map a failure response to a local exception.

    :param error: Remote error message.
    :param error_type: Remote exception type name.
    :returns: Exception to set on the caller's future.
    """
    message: str = error if error is not None else "Unknown error"
    if error_type == FUNCTION_NOT_FOUND_TYPE_NAME:
        return FunctionNotFoundError(message)
    return EnclaveRemoteError(error_type if error_type is not None else "Error", message)


def _failure_response(call_id: str, exc: BaseException) -> Message:
    message: str = str(exc)
    if len(message) == 0:
        message = type(exc).__name__
    return function_response_message(call_id, False, error=message, error_type=type(exc).__name__)
