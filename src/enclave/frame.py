"""Host-side boundary element.

A :class:`FrameElement` owns one sandboxed sub-document, the channel to the guest
runtime inside it and the host half of the function-call protocol. Attributes are
plain strings; props live in an :class:`ObservableProps` map and may hold any
value, including callables.
"""

import asyncio
import enum
import inspect
from collections.abc import Callable
from collections.abc import Iterator
from collections.abc import Mapping
from collections.abc import MutableMapping

from loguru import logger
from pydantic import ValidationError

from enclave.channel import ChannelMessage
from enclave.channel import ChannelPort
from enclave.channel import create_channel
from enclave.config import CONFIG_ATTRIBUTE_NAMES
from enclave.config import EnclaveSettings
from enclave.config import FrameConfig
from enclave.config import normalize_base
from enclave.config import normalize_pathname
from enclave.errors import ChannelClosedError
from enclave.errors import DocumentLoadError
from enclave.errors import EnclaveProtocolError
from enclave.errors import FunctionNotFoundError
from enclave.errors import ResourceLimitError
from enclave.errors import TransportError
from enclave.events import EventEmitter
from enclave.events import EventHandler
from enclave.functions import FunctionManager
from enclave.protocol import MESSAGE_ATTRIBUTE_CHANGE
from enclave.protocol import MESSAGE_CUSTOM_EVENT
from enclave.protocol import MESSAGE_EVENT
from enclave.protocol import MESSAGE_HANDSHAKE_INIT
from enclave.protocol import MESSAGE_HANDSHAKE_READY
from enclave.protocol import RESERVED_ATTRIBUTE_NAMES
from enclave.protocol import Message
from enclave.protocol import is_safe_attribute_name
from enclave.protocol import is_valid_event_name
from enclave.protocol import validate_message
from enclave.sandbox import SandboxHost
from enclave.sandbox import SubDocument
from enclave.serialization import SerializedValue

LOG_PREFIX: str = "[enclave-frame]"

REGISTER_EVENT: str = "register"
UNREGISTER_EVENT: str = "unregister"
READY_EVENT: str = "ready"
ERROR_EVENT: str = "error"
MESSAGE_SEND_FAILED_EVENT: str = "message-send-failed"

PropChangeListener = Callable[[str, object, bool], None]


def handler_name_for(event_name: str) -> str:
    """Return the direct-handler name for an event.

    ``"state:change"`` becomes ``"on_state_change"``.

    :param event_name: Event name.
    :returns: Handler name.
    """
    normalized: str = event_name.lower()
    for separator in (":", ".", "-"):
        normalized = normalized.replace(separator, "_")
    return f"on_{normalized}"


class FrameState(enum.Enum):
    """Lifecycle of a host element."""

    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    READY = "ready"
    TORN_DOWN = "torn_down"


class ObservableProps(MutableMapping[str, object]):
    """Mapping of host props that reports every write and delete."""

    _values: dict[str, object]
    _listeners: list[PropChangeListener]
    _reserved: frozenset[str]

    def __init__(self, reserved: frozenset[str] = frozenset()) -> None:
        """Initialize an empty map.

        :param reserved: Keys that may not be used as props.
        """
        self._values = {}
        self._listeners = []
        self._reserved = reserved

    def on_change(self, listener: PropChangeListener) -> Callable[[], None]:
        """Subscribe to changes.

        :param listener: Called with ``(key, value, deleted)``.
        :returns: Callable that removes the subscription.
        """
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _notify(self, key: str, value: object, deleted: bool) -> None:
        for listener in list(self._listeners):
            listener(key, value, deleted)

    def set(self, key: str, value: object) -> None:
        """Assign ``value`` to ``key`` and notify listeners.

        :param key: Prop name.
        :param value: Any value, including callables.
        :raises ValueError: If ``key`` is reserved.
        """
        if isinstance(key, str) is False or len(key) == 0:
            raise ValueError(f"Prop names must be non-empty strings, got {key!r}")
        if key in self._reserved:
            raise ValueError(f"{key!r} cannot be used as a prop name")
        self._values[key] = value
        self._notify(key, value, False)

    def delete(self, key: str) -> None:
        """Remove ``key`` and notify listeners. Missing keys are ignored."""
        if key not in self._values:
            return
        del self._values[key]
        self._notify(key, None, True)

    def __getitem__(self, key: str) -> object:
        return self._values[key]

    def __setitem__(self, key: str, value: object) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        if key not in self._values:
            raise KeyError(key)
        self.delete(key)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ObservableProps({self._values!r})"


class FrameElement:
    """Boundary element that embeds one guest app.

    Initialization starts once the element is mounted and both ``name`` and
    ``src`` are known, in either order.
    """

    _host: SandboxHost
    _settings: EnclaveSettings
    _attributes: dict[str, str]
    _handlers: dict[str, Callable[..., object]]
    _state: FrameState
    _is_mounted: bool
    _init_posted: bool
    _config: FrameConfig | None
    _document: SubDocument | None
    _port: ChannelPort | None
    _init_task: "asyncio.Task[None] | None"
    _manager: FunctionManager
    _events: EventEmitter
    _registered_functions: dict[str, Callable[..., object]]
    _prop_function_ids: dict[str, list[str]]
    _ready_waiters: list["asyncio.Future[None]"]
    _tasks: set["asyncio.Task[object]"]
    props: ObservableProps

    def __init__(
        self,
        host: SandboxHost,
        name: str | None = None,
        src: str | None = None,
        base: str | None = None,
        sandbox: str | None = None,
        pathname: str | None = None,
        attributes: Mapping[str, str] | None = None,
        props: Mapping[str, object] | None = None,
        handlers: Mapping[str, Callable[..., object]] | None = None,
        settings: EnclaveSettings | None = None,
    ) -> None:
        """Initialize an unmounted element.

        :param host: Embedding page that creates the sub-document.
        :param name: Frame name.
        :param src: Absolute URL of the guest app.
        :param base: Routing base, defaults to ``/<name>``.
        :param sandbox: Sandbox tokens for the sub-document.
        :param pathname: Initial route appended to ``src``.
        :param attributes: Extra string attributes forwarded to the guest.
        :param props: Initial props.
        :param handlers: Direct event handlers keyed by handler name such as ``on_save``.
        :param settings: Timeouts and limits.
        """
        self._host = host
        self._settings = settings if settings is not None else EnclaveSettings()
        self._attributes = {}
        self._handlers = {}
        self._state = FrameState.UNCONFIGURED
        self._is_mounted = False
        self._init_posted = False
        self._config = None
        self._document = None
        self._port = None
        self._init_task = None
        self._manager = FunctionManager(
            self._post_to_guest,
            call_timeout=self._settings.function_call_timeout,
            max_depth=self._settings.max_serialization_depth,
            max_functions=self._settings.max_functions,
            name="enclave-frame",
        )
        self._events = EventEmitter(buffer_limit=self._settings.event_buffer_limit, log_prefix=LOG_PREFIX)
        self._registered_functions = {}
        self._prop_function_ids = {}
        self._ready_waiters = []
        self._tasks = set()

        self.props = ObservableProps(reserved=CONFIG_ATTRIBUTE_NAMES | RESERVED_ATTRIBUTE_NAMES)
        self.props.on_change(self._on_prop_changed)

        configured: dict[str, str | None] = {
            "name": name,
            "src": src,
            "base": base,
            "sandbox": sandbox,
            "pathname": pathname,
        }
        for attribute_name, value in configured.items():
            if value is not None:
                self._attributes[attribute_name] = value
        if attributes is not None:
            for attribute_name, value in attributes.items():
                self._attributes[attribute_name] = str(value)
        if props is not None:
            for key, value in props.items():
                self.props.set(key, value)
        if handlers is not None:
            for handler_name, handler in handlers.items():
                self.bind_handler(handler_name, handler)

    def __repr__(self) -> str:
        return f"<FrameElement name={self.name!r} state={self._state.value}>"

    @property
    def state(self) -> FrameState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is FrameState.READY

    @property
    def name(self) -> str | None:
        return self._attributes.get("name")

    @property
    def src(self) -> str | None:
        return self._attributes.get("src")

    @property
    def base(self) -> str:
        """Return the normalized routing base."""
        return normalize_base(self._attributes.get("base"), self.name or "")

    @property
    def pathname(self) -> str:
        """Return the normalized initial route."""
        return normalize_pathname(self._attributes.get("pathname"))

    @property
    def document(self) -> SubDocument | None:
        return self._document

    @property
    def function_manager(self) -> FunctionManager:
        return self._manager

    @property
    def registered_functions(self) -> frozenset[str]:
        """Return the names of functions the guest registered."""
        return frozenset(self._registered_functions)

    @property
    def attributes(self) -> dict[str, str]:
        return dict(self._attributes)

    def get_attribute(self, name: str) -> str | None:
        return self._attributes.get(name)

    def set_attribute(self, name: str, value: object) -> None:
        """Set a string attribute and forward the change to the guest.

        :param name: Attribute name.
        :param value: New value, stored as a string.
        """
        new_value: str = str(value)
        old_value: str | None = self._attributes.get(name)
        if old_value == new_value:
            return
        self._attributes[name] = new_value
        self._on_attribute_changed(name, old_value, new_value)

    def remove_attribute(self, name: str) -> None:
        """Remove an attribute and forward the removal to the guest."""
        if name not in self._attributes:
            return
        old_value: str = self._attributes.pop(name)
        self._on_attribute_changed(name, old_value, None)

    def _on_attribute_changed(self, name: str, old_value: str | None, new_value: str | None) -> None:
        if name in ("name", "src"):
            self._maybe_initialize()

        if name == "src" and self._document is not None and old_value is not None:
            logger.warning(f"{LOG_PREFIX} Changing src after initialization is not supported")

        if self._is_forwarding() is False:
            return

        if name in ("src", "sandbox"):
            return
        if is_safe_attribute_name(name) is False:
            logger.warning(f"{LOG_PREFIX} Refusing to forward reserved attribute: {name}")
            return

        forwarded: object = new_value
        if name == "pathname":
            forwarded = self.pathname
        elif name == "base":
            forwarded = self.base
        self._send_attribute_change(name, forwarded)

    def _is_forwarding(self) -> bool:
        return self._init_posted is True and self._state is not FrameState.TORN_DOWN

    def mount(self) -> None:
        """Attach the element to its host and start initialization when configured."""
        if self._state is FrameState.TORN_DOWN:
            logger.warning(f"{LOG_PREFIX} Cannot mount an element that was removed")
            return
        if self._is_mounted is True:
            return
        self._is_mounted = True
        self._maybe_initialize()

    def _maybe_initialize(self) -> None:
        if self._is_mounted is False or self._state is not FrameState.UNCONFIGURED:
            return
        if not self.name or not self.src:
            return

        config_fields: dict[str, str] = {
            key: value for key, value in self._attributes.items() if key in CONFIG_ATTRIBUTE_NAMES
        }
        try:
            config: FrameConfig = FrameConfig(**config_fields)
        except ValidationError as exc:
            logger.error(f"{LOG_PREFIX} Initialization failed: {exc}")
            self._emit_local(ERROR_EVENT, {"message": "Initialization failed", "error": exc})
            return

        self._config = config
        self._state = FrameState.CONNECTING
        self._init_task = asyncio.get_running_loop().create_task(self._initialize(config))

    async def _initialize(self, config: FrameConfig) -> None:
        host_port: ChannelPort
        guest_port: ChannelPort
        host_port, guest_port = create_channel()
        self._port = host_port
        host_port.on_message = self._on_port_message

        document: SubDocument = self._host.create_document(config.document_url, config.sandbox_policy)
        self._document = document

        load_timeout: float = self._settings.load_timeout
        try:
            await asyncio.wait_for(document.loaded, load_timeout)
        except asyncio.TimeoutError as exc:
            logger.error(f"{LOG_PREFIX} Sub-document load timeout after {load_timeout}s: {config.src}")
            self._emit_local(ERROR_EVENT, {"message": "Sub-document load failed", "error": exc})
            return
        except DocumentLoadError as exc:
            logger.error(f"{LOG_PREFIX} Sub-document load failed: {exc}")
            self._emit_local(ERROR_EVENT, {"message": "Sub-document load failed", "error": exc})
            return

        props: dict[str, object] = self._collect_all_props(config)
        try:
            payload: dict[str, object]
            transferables: list[object]
            payload, transferables = self._serialize_props(props)
        except ResourceLimitError as exc:
            logger.error(f"{LOG_PREFIX} Failed to serialize props: {exc}")
            self._emit_local(ERROR_EVENT, {"message": "Failed to serialize props", "error": exc})
            return

        message: Message = {"type": MESSAGE_HANDSHAKE_INIT, "payload": payload}
        transfer: list[object] = [guest_port, *transferables]
        try:
            document.content_window.post_message(message, config.origin, transfer)
        except TransportError as exc:
            logger.error(f"{LOG_PREFIX} Failed to send init message: {exc}")
            self._report_send_failure(exc, message, transfer)
            return
        self._init_posted = True

    def _collect_all_props(self, config: FrameConfig) -> dict[str, object]:
        """Gather the handshake snapshot.

        Config values come first, then forwarded attributes, then props, which
        override attributes of the same name.
        """
        props: dict[str, object] = {
            "base": config.normalized_base,
            "name": config.name,
            "pathname": config.pathname,
        }
        for attribute_name, value in self._attributes.items():
            if attribute_name in CONFIG_ATTRIBUTE_NAMES:
                continue
            if is_safe_attribute_name(attribute_name) is False:
                continue
            props[attribute_name] = value
        for key, value in self.props.items():
            props[key] = value
        return props

    def _serialize_props(self, props: Mapping[str, object]) -> tuple[dict[str, object], list[object]]:
        """Serialize each prop on its own so its function ids can be released later."""
        payload: dict[str, object] = {}
        transferables: list[object] = []
        seen: set[int] = set()
        minted: dict[str, list[str]] = {}
        try:
            for key, value in props.items():
                serialized: SerializedValue = self._manager.serialize(value)
                payload[key] = serialized.wire
                minted[key] = serialized.function_ids
                for item in serialized.transferables:
                    if id(item) not in seen:
                        seen.add(id(item))
                        transferables.append(item)
        except ResourceLimitError:
            for fn_ids in minted.values():
                self._manager.release_functions(fn_ids)
            raise

        for key, fn_ids in minted.items():
            if key in self.props and len(fn_ids) > 0:
                self._prop_function_ids[key] = fn_ids
        return payload, transferables

    def _on_prop_changed(self, key: str, value: object, deleted: bool) -> None:
        if self._is_forwarding() is False:
            return
        self._send_prop(key, value)

    def _send_prop(self, key: str, value: object) -> bool:
        previous_ids: list[str] = self._prop_function_ids.pop(key, [])
        sent: bool = self._send_attribute_change(key, value, prop_key=key)
        if len(previous_ids) > 0:
            self._manager.release_exported(previous_ids)
        return sent

    def _send_attribute_change(self, attribute: str, value: object, prop_key: str | None = None) -> bool:
        try:
            serialized: SerializedValue = self._manager.serialize(value)
        except ResourceLimitError as exc:
            logger.error(f"{LOG_PREFIX} Failed to serialize {attribute}: {exc}")
            self._emit_local(ERROR_EVENT, {"message": f"Failed to serialize {attribute}", "error": exc})
            return False

        message: Message = {"type": MESSAGE_ATTRIBUTE_CHANGE, "attribute": attribute, "value": serialized.wire}
        if self._try_post(message, serialized.transferables) is False:
            self._manager.release_functions(serialized.function_ids)
            return False
        if prop_key is not None and len(serialized.function_ids) > 0:
            self._prop_function_ids[prop_key] = serialized.function_ids
        return True

    def commit(self) -> int:
        """Re-send every current prop, for values that were mutated in place.

        :returns: Number of props sent.
        """
        if self._is_forwarding() is False:
            return 0
        sent_count: int = 0
        for key, value in self.props.items():
            if self._send_prop(key, value) is True:
                sent_count += 1
        return sent_count

    def _post_to_guest(self, message: Message, transfer: list[object]) -> None:
        port: ChannelPort | None = self._port
        if port is None:
            raise ChannelClosedError("MessagePort not ready")
        try:
            port.post_message(message, transfer)
        except TransportError as exc:
            logger.error(f"{LOG_PREFIX} Failed to send message: {exc}")
            self._report_send_failure(exc, message, transfer)
            raise

    def _try_post(self, message: Message, transfer: list[object]) -> bool:
        try:
            self._post_to_guest(message, transfer)
        except TransportError:
            return False
        return True

    def _report_send_failure(self, exc: Exception, message: Message, transfer: list[object]) -> None:
        self._emit_local(
            MESSAGE_SEND_FAILED_EVENT,
            {"error": str(exc), "message": message, "transferables_count": len(transfer)},
        )

    def _on_port_message(self, event: ChannelMessage) -> None:
        message: Message | None = validate_message(event.data, LOG_PREFIX)
        if message is None:
            return

        if self._manager.handle_message(message) is True:
            return

        message_type: object = message["type"]
        if message_type == MESSAGE_HANDSHAKE_READY:
            self._on_ready()
            return

        if message_type == MESSAGE_CUSTOM_EVENT:
            payload: dict[str, object] = message["payload"]
            event_name: object = payload["name"]
            if is_valid_event_name(event_name) is False:
                logger.warning(f"{LOG_PREFIX} Invalid event name: {event_name!r}")
                return
            try:
                data: object = self._manager.deserialize(payload.get("data"))
            except EnclaveProtocolError as exc:
                logger.warning(f"{LOG_PREFIX} Dropped malformed {event_name} event: {exc}")
                return
            self._dispatch_guest_event(event_name, data)
            return

        logger.warning(f"{LOG_PREFIX} Unexpected message type from guest: {message_type}")

    def _on_ready(self) -> None:
        if self._state is not FrameState.CONNECTING:
            return
        self._state = FrameState.READY
        waiters: list[asyncio.Future[None]] = list(self._ready_waiters)
        self._ready_waiters.clear()
        for waiter in waiters:
            if waiter.done() is False:
                waiter.set_result(None)
        logger.debug(f"{LOG_PREFIX} {self.name} is ready")
        self._emit_local(READY_EVENT, {"name": self.name})

    def _dispatch_guest_event(self, name: str, data: object) -> None:
        if name == REGISTER_EVENT and isinstance(data, dict) is True:
            for fn_name, fn in data.items():
                if isinstance(fn_name, str) is True and callable(fn) is True:
                    self._registered_functions[fn_name] = fn

        if name == UNREGISTER_EVENT and isinstance(data, dict) is True:
            functions: object = data.get("functions")
            if isinstance(functions, list) is True:
                for fn_name in functions:
                    self._registered_functions.pop(fn_name, None)

        self._emit_local(name, data)

        handler: Callable[..., object] | None = self._handlers.get(handler_name_for(name))
        if handler is None:
            return
        try:
            result: object = handler(data)
        except Exception:
            logger.exception(f"{LOG_PREFIX} Error in {handler_name_for(name)} handler")
            return
        if inspect.isawaitable(result) is True:
            task: asyncio.Task[object] = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._finish_handler_task)

    def _finish_handler_task(self, task: "asyncio.Task[object]") -> None:
        self._tasks.discard(task)
        if task.cancelled() is True:
            return
        exc: BaseException | None = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"{LOG_PREFIX} Error in async event handler")

    def _emit_local(self, name: str, detail: object = None) -> None:
        self._events.emit(name, detail)

    def on(self, name: str, handler: EventHandler) -> Callable[[], None]:
        """Listen for a local event (guest events, ``ready``, ``error``, ``message-send-failed``).

        :param name: Event name.
        :param handler: Called with the event detail.
        :returns: Callable that removes the listener.
        """
        return self._events.on(name, handler)

    def off(self, name: str, handler: EventHandler) -> None:
        self._events.off(name, handler)

    def bind_handler(self, handler_name: str, handler: Callable[..., object]) -> None:
        """Bind a direct handler such as ``on_save`` or ``on_state_change``.

        :param handler_name: Handler name; see :func:`handler_name_for`.
        :param handler: Called with the event data after listeners ran.
        :raises ValueError: If the name does not start with ``on_``.
        :raises TypeError: If ``handler`` is not callable.
        """
        if handler_name.startswith("on_") is False:
            raise ValueError(f"Handler names must start with 'on_', got {handler_name!r}")
        if callable(handler) is False:
            raise TypeError(f"Handler {handler_name} must be callable")
        self._handlers[handler_name] = handler

    def unbind_handler(self, handler_name: str) -> None:
        self._handlers.pop(handler_name, None)

    def emit(self, name: str, data: object = None) -> bool:
        """Send an event to the guest.

        :param name: Event name.
        :param data: Event payload; callables become remote functions.
        :returns: ``True`` when the message was handed to the channel.
        """
        if is_valid_event_name(name) is False:
            logger.error(f"{LOG_PREFIX} Invalid event name: {name!r}")
            return False
        if self._port is None or self._state is FrameState.TORN_DOWN:
            logger.warning(f"{LOG_PREFIX} MessagePort not ready, cannot emit event {name}")
            return False

        try:
            serialized: SerializedValue = self._manager.serialize(data)
        except ResourceLimitError as exc:
            logger.error(f"{LOG_PREFIX} Failed to serialize {name} event: {exc}")
            self._emit_local(ERROR_EVENT, {"message": f"Failed to serialize {name} event", "error": exc})
            return False

        message: Message = {"type": MESSAGE_EVENT, "name": name, "data": serialized.wire}
        if self._try_post(message, serialized.transferables) is False:
            self._manager.release_functions(serialized.function_ids)
            return False
        return True

    def invoke(self, name: str, *args: object) -> "asyncio.Future[object]":
        """Call a function the guest registered under ``name``.

        :param name: Registered function name.
        :param args: Positional arguments.
        :returns: Future for the result.
        """
        fn: Callable[..., object] | None = self._registered_functions.get(name)
        if fn is None:
            future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
            future.set_exception(
                FunctionNotFoundError(f"Function '{name}' not registered by guest frame '{self.name}'")
            )
            return future
        result: object = fn(*args)
        if inspect.isawaitable(result) is True:
            return asyncio.ensure_future(result)
        completed: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        completed.set_result(result)
        return completed

    async def wait_until_ready(self, timeout: float | None = None) -> None:
        """Wait for the guest's ``handshake-ready``.

        :param timeout: Seconds to wait, ``None`` for no limit.
        :raises ChannelClosedError: If the element is removed first.
        :raises asyncio.TimeoutError: If ``timeout`` elapses.
        """
        if self._state is FrameState.READY:
            return
        if self._state is FrameState.TORN_DOWN:
            raise ChannelClosedError(f"Frame {self.name} was removed")
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._ready_waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
        finally:
            if waiter in self._ready_waiters:
                self._ready_waiters.remove(waiter)

    def remove(self) -> None:
        """Tear the element down. Idempotent."""
        if self._state is FrameState.TORN_DOWN:
            return
        self._state = FrameState.TORN_DOWN
        self._is_mounted = False

        if self._init_task is not None and self._init_task.done() is False:
            self._init_task.cancel()
        self._init_task = None

        self._manager.cleanup()

        port: ChannelPort | None = self._port
        if port is not None:
            port.on_message = None
            port.close()
        self._port = None

        if self._document is not None:
            self._document.remove()

        waiters: list[asyncio.Future[None]] = list(self._ready_waiters)
        self._ready_waiters.clear()
        for waiter in waiters:
            if waiter.done() is False:
                waiter.set_exception(ChannelClosedError(f"Frame {self.name} was removed"))

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._registered_functions.clear()
        self._prop_function_ids.clear()
        self._events.clear()
        self._init_posted = False
        logger.debug(f"{LOG_PREFIX} {self.name} removed")
