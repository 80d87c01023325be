"""Guest-side runtime.

A :class:`GuestRuntime` is bound to one :class:`~enclave.sandbox.GuestWindow`. It
waits for the host's handshake, exposes the received props as a read-only
:class:`PropsBag`, and offers events, function registration and prop watching.
"""

import asyncio
import atexit
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Mapping

from loguru import logger

from enclave.channel import ChannelMessage
from enclave.channel import ChannelPort
from enclave.config import EnclaveSettings
from enclave.errors import ChannelClosedError
from enclave.errors import EnclaveProtocolError
from enclave.errors import HandshakeTimeoutError
from enclave.errors import MissingPortError
from enclave.errors import OriginMismatchError
from enclave.errors import ResourceLimitError
from enclave.errors import TransportError
from enclave.events import EventHandler
from enclave.events import EventEmitter
from enclave.functions import FunctionManager
from enclave.protocol import MESSAGE_ATTRIBUTE_CHANGE
from enclave.protocol import MESSAGE_CUSTOM_EVENT
from enclave.protocol import MESSAGE_EVENT
from enclave.protocol import MESSAGE_HANDSHAKE_INIT
from enclave.protocol import MESSAGE_HANDSHAKE_READY
from enclave.protocol import Message
from enclave.protocol import is_safe_attribute_name
from enclave.protocol import is_valid_event_name
from enclave.protocol import validate_message
from enclave.sandbox import GuestWindow
from enclave.sandbox import WindowMessage
from enclave.serialization import SerializedValue
from enclave.watch import PropertyWatcher
from enclave.watch import WatchHandler

LOG_PREFIX: str = "[enclave-sdk]"


class PropsBag(Mapping[str, object]):
    """Read-only view of the props the host sent.

    Values are reachable by key and, for identifier-like names, as attributes.
    """

    _values: dict[str, object]

    def __init__(self) -> None:
        object.__setattr__(self, "_values", {})

    def __getitem__(self, key: str) -> object:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __getattr__(self, name: str) -> object:
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("PropsBag is read-only; props are updated by the host")

    def __repr__(self) -> str:
        return f"PropsBag({self._values!r})"

    def _replace(self, values: Mapping[str, object]) -> None:
        self._values.clear()
        self._values.update(values)

    def _set(self, key: str, value: object) -> None:
        self._values[key] = value


class GuestRuntime:
    """Guest half of the boundary for one window."""

    _window: GuestWindow
    _settings: EnclaveSettings
    _props: PropsBag
    _events: EventEmitter
    _watcher: PropertyWatcher
    _manager: FunctionManager | None
    _port: ChannelPort | None
    _parent_origin: str | None
    _is_initialized: bool
    _is_closed: bool

    def __init__(self, window: GuestWindow, settings: EnclaveSettings | None = None) -> None:
        """Initialize an unconnected runtime.

        :param window: Guest window that receives the handshake.
        :param settings: Timeouts and limits.
        """
        self._window = window
        self._settings = settings if settings is not None else EnclaveSettings()
        self._props = PropsBag()
        self._events = EventEmitter(buffer_limit=self._settings.event_buffer_limit, log_prefix=LOG_PREFIX)
        self._watcher = PropertyWatcher(log_prefix=LOG_PREFIX)
        self._manager = None
        self._port = None
        self._parent_origin = None
        self._is_initialized = False
        self._is_closed = False

    @property
    def props(self) -> PropsBag:
        return self._props

    @property
    def window(self) -> GuestWindow:
        return self._window

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def parent_origin(self) -> str | None:
        """Origin of the host, known after the handshake."""
        return self._parent_origin

    @property
    def function_manager(self) -> FunctionManager | None:
        return self._manager

    async def initialize(self, expected_origin: str | None = None, timeout: float | None = None) -> None:
        """Wait for the host's ``handshake-init`` and connect.

        Returns immediately once initialized. After a failure the call may be
        retried.

        :param expected_origin: Host origin to accept; ``None`` accepts any.
        :param timeout: Seconds to wait; defaults to the ``init_timeout`` setting.
        :raises OriginMismatchError: If the handshake came from another origin.
        :raises MissingPortError: If the handshake carried no channel port.
        :raises HandshakeTimeoutError: If no handshake arrived in time.
        :raises ChannelClosedError: If the runtime was cleaned up.
        """
        if self._is_initialized is True:
            return
        if self._is_closed is True:
            raise ChannelClosedError("GuestRuntime was cleaned up")

        wait_seconds: float = timeout if timeout is not None else self._settings.init_timeout
        handshake: asyncio.Future[tuple[Message, ChannelPort, str]] = asyncio.get_running_loop().create_future()

        def on_window_message(event: WindowMessage) -> None:
            data: object = event.data
            if isinstance(data, dict) is False or data.get("type") != MESSAGE_HANDSHAKE_INIT:
                return
            if handshake.done() is True:
                logger.warning(f"{LOG_PREFIX} Ignoring duplicate handshake-init message")
                return
            self._window.remove_message_listener(on_window_message)

            if expected_origin is not None and event.origin != expected_origin:
                logger.error(
                    f"{LOG_PREFIX} Origin validation failed. Expected: {expected_origin}, Got: {event.origin}"
                )
                handshake.set_exception(OriginMismatchError(expected_origin, event.origin))
                return

            message: Message | None = validate_message(data, LOG_PREFIX)
            if message is None:
                handshake.set_exception(EnclaveProtocolError("Invalid handshake-init message"))
                return

            if len(event.ports) == 0:
                logger.error(f"{LOG_PREFIX} No MessagePort received in handshake-init message")
                handshake.set_exception(MissingPortError("No MessagePort received in handshake-init message"))
                return

            handshake.set_result((message, event.ports[0], event.origin))

        self._window.add_message_listener(on_window_message)
        message: Message
        port: ChannelPort
        origin: str
        try:
            message, port, origin = await asyncio.wait_for(handshake, wait_seconds)
        except asyncio.TimeoutError as exc:
            raise HandshakeTimeoutError(
                f"Initialization timeout: handshake-init not received within {wait_seconds}s"
            ) from exc
        finally:
            self._window.remove_message_listener(on_window_message)

        # A concurrent initialize() may have consumed the same handshake.
        if self._is_initialized is True or self._is_closed is True:
            return
        self._connect(message, port, origin)

    def _connect(self, message: Message, port: ChannelPort, origin: str) -> None:
        manager: FunctionManager = FunctionManager(
            self._post_to_host,
            call_timeout=self._settings.function_call_timeout,
            max_depth=self._settings.max_serialization_depth,
            max_functions=self._settings.max_functions,
            name="enclave-sdk",
        )
        self._manager = manager
        self._port = port
        self._parent_origin = origin

        payload: dict[str, object] = message["payload"]
        props: dict[str, object] = {}
        for key, wire in payload.items():
            if is_safe_attribute_name(key) is False:
                logger.warning(f"{LOG_PREFIX} Dropped reserved prop name from handshake: {key!r}")
                continue
            try:
                props[key] = manager.deserialize(wire)
            except EnclaveProtocolError as exc:
                logger.warning(f"{LOG_PREFIX} Dropped malformed prop {key!r}: {exc}")
        self._props._replace(props)
        self._watcher.seed(props)

        port.on_message = self._on_port_message
        self._is_initialized = True
        self._window.add_unload_callback(self.cleanup)
        atexit.register(self.cleanup)

        try:
            self._post_to_host({"type": MESSAGE_HANDSHAKE_READY}, [])
        except TransportError as exc:
            logger.error(f"{LOG_PREFIX} Failed to send handshake-ready: {exc}")

    def _post_to_host(self, message: Message, transfer: list[object]) -> None:
        port: ChannelPort | None = self._port
        if port is None:
            raise ChannelClosedError("MessagePort not ready")
        try:
            port.post_message(message, transfer)
        except TransportError as exc:
            logger.error(f"{LOG_PREFIX} Failed to send message: {exc}")
            raise

    def _on_port_message(self, event: ChannelMessage) -> None:
        message: Message | None = validate_message(event.data, LOG_PREFIX)
        if message is None:
            return
        manager: FunctionManager | None = self._manager
        if manager is None:
            return

        if manager.handle_message(message) is True:
            return

        message_type: object = message["type"]
        if message_type == MESSAGE_EVENT:
            try:
                data: object = manager.deserialize(message.get("data"))
            except EnclaveProtocolError as exc:
                logger.warning(f"{LOG_PREFIX} Dropped malformed {message['name']} event: {exc}")
                return
            self._events.emit(message["name"], data)
            return

        if message_type == MESSAGE_ATTRIBUTE_CHANGE:
            self._handle_attribute_change(message["attribute"], message["value"])
            return

        if message_type == MESSAGE_HANDSHAKE_INIT:
            logger.warning(f"{LOG_PREFIX} Ignoring duplicate handshake-init message")
            return

        logger.warning(f"{LOG_PREFIX} Unexpected message type from host: {message_type}")

    def _handle_attribute_change(self, attribute: str, wire: object) -> None:
        if is_safe_attribute_name(attribute) is False:
            logger.warning(f"{LOG_PREFIX} Blocked attempt to set reserved attribute: {attribute}")
            return
        try:
            value: object = self._manager.deserialize(wire)
        except EnclaveProtocolError as exc:
            logger.warning(f"{LOG_PREFIX} Dropped malformed value for {attribute}: {exc}")
            return
        self._props._set(attribute, value)
        self._watcher.notify(attribute, value)

    def emit(self, name: str, data: object = None) -> bool:
        """Send an event to the host.

        :param name: Event name.
        :param data: Event payload; callables become remote functions.
        :returns: ``True`` when the message was handed to the channel.
        """
        if is_valid_event_name(name) is False:
            logger.error(f"{LOG_PREFIX} Invalid event name: {name!r}")
            return False
        manager: FunctionManager | None = self._manager
        if manager is None or self._port is None:
            logger.warning(f"{LOG_PREFIX} Not initialized, cannot emit event {name}")
            return False

        try:
            serialized: SerializedValue = manager.serialize(data)
        except ResourceLimitError as exc:
            logger.error(f"{LOG_PREFIX} Failed to serialize {name} event: {exc}")
            return False

        message: Message = {"type": MESSAGE_CUSTOM_EVENT, "payload": {"name": name, "data": serialized.wire}}
        try:
            self._post_to_host(message, serialized.transferables)
        except TransportError:
            manager.release_functions(serialized.function_ids)
            return False
        return True

    def on(self, name: str, handler: EventHandler) -> Callable[[], None]:
        """Listen for host events; events that arrived earlier are replayed first.

        :param name: Event name.
        :param handler: Called with the event data.
        :returns: Callable that removes the listener.
        """
        return self._events.on(name, handler)

    def off(self, name: str, handler: EventHandler) -> None:
        self._events.off(name, handler)

    def register(
        self,
        name_or_functions: str | Mapping[str, Callable[..., object]],
        fn: Callable[..., object] | None = None,
    ) -> Callable[[], None]:
        """Expose functions the host can call by name.

        :param name_or_functions: A name together with ``fn``, or a name-to-function map.
        :param fn: Function when a single name is given.
        :returns: Callable that withdraws the registration.
        :raises TypeError: If any value is not callable.
        """
        functions: dict[str, Callable[..., object]]
        if isinstance(name_or_functions, str) is True:
            functions = {name_or_functions: fn}
        else:
            functions = dict(name_or_functions)

        for fn_name, candidate in functions.items():
            if callable(candidate) is False:
                raise TypeError(f"register() expects callables, got {type(candidate).__name__} for {fn_name!r}")

        self.emit("register", functions)
        names: list[str] = list(functions)

        def unregister() -> None:
            self.emit("unregister", {"functions": names})

        return unregister

    def watch(
        self,
        keys_or_handler: Iterable[str] | WatchHandler,
        handler: WatchHandler | None = None,
    ) -> Callable[[], None]:
        """Watch prop changes; see :meth:`enclave.watch.PropertyWatcher.watch`."""
        return self._watcher.watch(keys_or_handler, handler)

    def cleanup(self) -> None:
        """Release exported functions and disconnect. Idempotent."""
        if self._is_closed is True:
            return
        self._is_closed = True
        self._is_initialized = False

        if self._manager is not None:
            self._manager.cleanup()

        port: ChannelPort | None = self._port
        if port is not None:
            port.on_message = None
            port.close()
        self._port = None

        self._window.remove_unload_callback(self.cleanup)
        atexit.unregister(self.cleanup)
        self._events.clear()
        self._watcher.clear()
        logger.debug(f"{LOG_PREFIX} Runtime cleaned up")
