"""Wire encoding for values that cross the boundary.

Functions become tokens that point into the sending side's registry, transferable
buffers and ports are collected for the transport, and containers seen earlier in
the same walk become back-references so cycles and shared structure survive.
"""

import mmap
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

from enclave.channel import ChannelPort
from enclave.errors import EnclaveProtocolError
from enclave.errors import FunctionRegistryFullError
from enclave.errors import SerializationDepthError

FUNCTION_TOKEN_KEY: str = "__fn"
FUNCTION_META_KEY: str = "__meta"
BACKREF_KEY: str = "__ref"
ESCAPED_DICT_KEY: str = "__dict"
ANONYMOUS_FUNCTION_NAME: str = "anonymous"

DEFAULT_MAX_DEPTH: int = 100
DEFAULT_MAX_FUNCTIONS: int = 1000

_PRIMITIVE_TYPES: tuple[type, ...] = (bool, int, float, complex, str, bytes)

ProxyFactory = Callable[[str, str], object]


@dataclass
class SerializedValue:
    """Result of serializing one value."""

    wire: object
    transferables: list[object] = field(default_factory=list)
    function_ids: list[str] = field(default_factory=list)


def is_transferable(value: object) -> bool:
    """Check whether ``value`` is moved by reference instead of copied.

    :param value: Candidate value.
    :returns: ``True`` for buffers, memory maps and channel ports.
    """
    return isinstance(value, (bytearray, memoryview, mmap.mmap, ChannelPort))


def function_display_name(fn: object) -> str:
    """Return the name recorded in a function token.

    :param fn: Callable being exported.
    :returns: The callable's ``__name__`` or ``"anonymous"``.
    """
    name: object = getattr(fn, "__name__", None)
    if isinstance(name, str) is False or len(name) == 0 or name == "<lambda>":
        return ANONYMOUS_FUNCTION_NAME
    return name


def is_function_token(value: object) -> bool:
    """Check whether ``value`` has the shape of a function token."""
    if isinstance(value, dict) is False:
        return False
    if isinstance(value.get(FUNCTION_TOKEN_KEY), str) is False:
        return False
    return set(value.keys()) <= {FUNCTION_TOKEN_KEY, FUNCTION_META_KEY}


def _is_backref(value: dict[object, object]) -> bool:
    if len(value) != 1 or BACKREF_KEY not in value:
        return False
    index: object = value[BACKREF_KEY]
    return isinstance(index, int) is True and isinstance(index, bool) is False


def _is_escaped_dict(value: dict[object, object]) -> bool:
    return len(value) == 1 and isinstance(value.get(ESCAPED_DICT_KEY), dict)


def _looks_like_marker(value: dict[object, object]) -> bool:
    return is_function_token(value) or _is_backref(value) or _is_escaped_dict(value)


class _SerializationWalk:
    """State for one serialization call."""

    _registry: dict[str, Callable[..., object]]
    _tracked: set[str]
    _max_depth: int
    _max_functions: int
    _container_indexes: dict[int, int]
    _tokens_by_identity: dict[int, dict[str, object]]
    _transferable_identities: set[int]
    transferables: list[object]
    function_ids: list[str]

    def __init__(
        self,
        registry: dict[str, Callable[..., object]],
        tracked: set[str],
        max_depth: int,
        max_functions: int,
    ) -> None:
        self._registry = registry
        self._tracked = tracked
        self._max_depth = max_depth
        self._max_functions = max_functions
        self._container_indexes = {}
        self._tokens_by_identity = {}
        self._transferable_identities = set()
        self.transferables = []
        self.function_ids = []

    def _export_function(self, fn: Callable[..., object]) -> dict[str, object]:
        identity: int = id(fn)
        existing: dict[str, object] | None = self._tokens_by_identity.get(identity)
        if existing is not None:
            return dict(existing)

        if len(self._registry) >= self._max_functions:
            raise FunctionRegistryFullError(
                f"Function registry limit ({self._max_functions}) exceeded. "
                "Possible memory leak: release functions that are no longer needed."
            )

        fn_id: str = str(uuid.uuid4())
        self._registry[fn_id] = fn
        self._tracked.add(fn_id)
        self.function_ids.append(fn_id)
        token: dict[str, object] = {
            FUNCTION_TOKEN_KEY: fn_id,
            FUNCTION_META_KEY: {"name": function_display_name(fn)},
        }
        self._tokens_by_identity[identity] = token
        return dict(token)

    def _collect_transferable(self, value: object) -> None:
        identity: int = id(value)
        if identity in self._transferable_identities:
            return
        self._transferable_identities.add(identity)
        self.transferables.append(value)

    def _enter_container(self, value: object) -> dict[str, int] | None:
        identity: int = id(value)
        existing: int | None = self._container_indexes.get(identity)
        if existing is not None:
            return {BACKREF_KEY: existing}
        self._container_indexes[identity] = len(self._container_indexes)
        return None

    def walk(self, value: object, depth: int) -> object:
        """Encode one value.

        :param value: Runtime value.
        :param depth: Nesting level of ``value``; the root is level 0.
        :returns: Wire value.
        :raises SerializationDepthError: If ``depth`` exceeds the limit.
        :raises FunctionRegistryFullError: If the registry is full.
        """
        if depth > self._max_depth:
            raise SerializationDepthError(
                f"Maximum serialization depth ({self._max_depth}) exceeded. "
                "Possible circular reference or deeply nested object."
            )

        if value is None or isinstance(value, _PRIMITIVE_TYPES) is True:
            return value

        if is_transferable(value) is True:
            self._collect_transferable(value)
            return value

        if isinstance(value, dict) is True:
            backref: dict[str, int] | None = self._enter_container(value)
            if backref is not None:
                return backref
            encoded_dict: dict[object, object] = {}
            for key, item in value.items():
                encoded_dict[key] = self.walk(item, depth + 1)
            if _looks_like_marker(encoded_dict) is True or _looks_like_marker(value) is True:
                return {ESCAPED_DICT_KEY: encoded_dict}
            return encoded_dict

        if isinstance(value, list) is True:
            backref = self._enter_container(value)
            if backref is not None:
                return backref
            return [self.walk(item, depth + 1) for item in value]

        if isinstance(value, tuple) is True:
            backref = self._enter_container(value)
            if backref is not None:
                return backref
            return tuple(self.walk(item, depth + 1) for item in value)

        if callable(value) is True:
            return self._export_function(value)

        return value

    def rollback(self) -> None:
        """Remove every registry entry minted by this walk."""
        for fn_id in self.function_ids:
            self._registry.pop(fn_id, None)
            self._tracked.discard(fn_id)
        self.function_ids.clear()


def serialize_value(
    value: object,
    registry: dict[str, Callable[..., object]],
    tracked: set[str],
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_functions: int = DEFAULT_MAX_FUNCTIONS,
) -> SerializedValue:
    """Encode ``value`` for transport.

    Callables are inserted into ``registry`` and ``tracked`` under fresh ids. If
    a guard trips, entries minted by this call are removed again before the error
    propagates.

    :param value: Runtime value.
    :param registry: Function registry of the sending side.
    :param tracked: Ids exported by the sending side.
    :param max_depth: Maximum nesting level.
    :param max_functions: Maximum number of live registry entries.
    :returns: Wire value with its transferables and minted function ids.
    :raises SerializationDepthError: If the value nests too deeply.
    :raises FunctionRegistryFullError: If the registry would exceed its cap.
    """
    walk: _SerializationWalk = _SerializationWalk(registry, tracked, max_depth, max_functions)
    try:
        wire: object = walk.walk(value, 0)
    except (SerializationDepthError, FunctionRegistryFullError, RecursionError):
        walk.rollback()
        raise
    return SerializedValue(wire, walk.transferables, list(walk.function_ids))


_UNDER_CONSTRUCTION: object = object()


class _DeserializationWalk:
    """State for one deserialization call."""

    _make_proxy: ProxyFactory
    _containers: list[object]

    def __init__(self, make_proxy: ProxyFactory) -> None:
        self._make_proxy = make_proxy
        self._containers = []

    def _resolve_backref(self, index: int) -> object:
        if index < 0 or index >= len(self._containers):
            raise EnclaveProtocolError(f"Back-reference to unknown container index: {index}")
        target: object = self._containers[index]
        if target is _UNDER_CONSTRUCTION:
            raise EnclaveProtocolError(f"Back-reference to an unfinished tuple at index {index}")
        return target

    def _walk_dict(self, value: dict[object, object]) -> dict[object, object]:
        decoded_dict: dict[object, object] = {}
        self._containers.append(decoded_dict)
        for key, item in value.items():
            decoded_dict[key] = self.walk(item)
        return decoded_dict

    def walk(self, value: object) -> object:
        """Decode one wire value.

        :param value: Wire value.
        :returns: Runtime value.
        :raises EnclaveProtocolError: If a back-reference is dangling.
        """
        if isinstance(value, dict) is True:
            if is_function_token(value) is True:
                fn_id: str = value[FUNCTION_TOKEN_KEY]
                meta: object = value.get(FUNCTION_META_KEY)
                name: str = ANONYMOUS_FUNCTION_NAME
                if isinstance(meta, dict) is True and isinstance(meta.get("name"), str) is True:
                    name = meta["name"]
                return self._make_proxy(fn_id, name)
            if _is_backref(value) is True:
                return self._resolve_backref(value[BACKREF_KEY])
            if _is_escaped_dict(value) is True:
                return self._walk_dict(value[ESCAPED_DICT_KEY])
            return self._walk_dict(value)

        if isinstance(value, list) is True:
            decoded_list: list[object] = []
            self._containers.append(decoded_list)
            for item in value:
                decoded_list.append(self.walk(item))
            return decoded_list

        if isinstance(value, tuple) is True:
            index: int = len(self._containers)
            self._containers.append(_UNDER_CONSTRUCTION)
            decoded_tuple: tuple[object, ...] = tuple(self.walk(item) for item in value)
            self._containers[index] = decoded_tuple
            return decoded_tuple

        return value


def deserialize_value(wire: object, make_proxy: ProxyFactory) -> object:
    """Decode a wire value produced by :func:`serialize_value`.

    :param wire: Wire value.
    :param make_proxy: Factory called with ``(fn_id, name)`` for each function token.
    :returns: Runtime value.
    :raises EnclaveProtocolError: If the wire value is malformed or nests too
        deeply to decode.
    """
    try:
        return _DeserializationWalk(make_proxy).walk(wire)
    except RecursionError as exc:
        raise EnclaveProtocolError("Wire value nests too deeply to decode") from exc
