"""Dedicated duplex channel between one host element and one guest runtime."""

import asyncio
import mmap
from collections import deque
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field

from loguru import logger

from enclave.errors import ChannelClosedError
from enclave.errors import DataCloneError


@dataclass
class ChannelMessage:
    """One delivered channel message."""

    data: object
    ports: list["ChannelPort"] = field(default_factory=list)


MessageHandler = Callable[[ChannelMessage], None]


def _clone(value: object, transfer_ids: set[int], memo: dict[int, object]) -> object:
    """Recursively clone one value.

    :param value: Value to clone.
    :param transfer_ids: Identities of values moved instead of copied.
    :param memo: Already-cloned containers keyed by source identity.
    :returns: Cloned value.
    :raises DataCloneError: If the value type cannot cross the channel.
    """
    identity: int = id(value)
    if identity in transfer_ids:
        return value

    if value is None or isinstance(value, (bool, int, float, complex, str, bytes)) is True:
        return value

    cached: object = memo.get(identity, memo)
    if cached is not memo:
        return cached

    if isinstance(value, dict) is True:
        cloned_dict: dict[object, object] = {}
        memo[identity] = cloned_dict
        for key, item in value.items():
            cloned_dict[_clone(key, transfer_ids, memo)] = _clone(item, transfer_ids, memo)
        return cloned_dict

    if isinstance(value, list) is True:
        cloned_list: list[object] = []
        memo[identity] = cloned_list
        for item in value:
            cloned_list.append(_clone(item, transfer_ids, memo))
        return cloned_list

    if isinstance(value, tuple) is True:
        cloned_tuple: tuple[object, ...] = tuple(_clone(item, transfer_ids, memo) for item in value)
        memo[identity] = cloned_tuple
        return cloned_tuple

    if isinstance(value, (set, frozenset)) is True:
        cloned_items: list[object] = [_clone(item, transfer_ids, memo) for item in value]
        cloned_set: set[object] | frozenset[object]
        if isinstance(value, frozenset) is True:
            cloned_set = frozenset(cloned_items)
        else:
            cloned_set = set(cloned_items)
        memo[identity] = cloned_set
        return cloned_set

    if isinstance(value, bytearray) is True:
        copied_buffer: bytearray = bytearray(value)
        memo[identity] = copied_buffer
        return copied_buffer

    if isinstance(value, memoryview) is True:
        copied_view: memoryview = memoryview(bytearray(value.tobytes()))
        memo[identity] = copied_view
        return copied_view

    if isinstance(value, ChannelPort) is True:
        raise DataCloneError("A ChannelPort must be listed in the transfer list to be sent")

    if isinstance(value, mmap.mmap) is True:
        raise DataCloneError("A memory map must be listed in the transfer list to be sent")

    raise DataCloneError(f"Cannot clone message data of type {type(value).__name__}")


def structured_clone(value: object, transfer: Iterable[object] = ()) -> object:
    """Copy a message the way it would cross an isolation boundary.

    Containers are copied with shared and circular references preserved, values
    listed in ``transfer`` are moved by reference, and anything else that is not
    plain data is rejected.

    :param value: Message to clone.
    :param transfer: Values delivered by reference instead of copied.
    :returns: Cloned message.
    :raises DataCloneError: If the message contains an unclonable value.
    """
    transfer_ids: set[int] = {id(item) for item in transfer}
    return _clone(value, transfer_ids, {})


class ChannelPort:
    """One end of a dedicated duplex channel.

    Messages posted on one port are delivered to its peer on the running event
    loop in send order. Messages that arrive before a handler is attached are
    queued and flushed once :attr:`on_message` is set.
    """

    _peer: "ChannelPort | None"
    _on_message: MessageHandler | None
    _backlog: deque[ChannelMessage]
    _is_closed: bool

    def __init__(self) -> None:
        """Initialize an unpaired, open port."""
        self._peer = None
        self._on_message = None
        self._backlog = deque()
        self._is_closed = False

    @property
    def is_closed(self) -> bool:
        """Report whether this port was closed.

        :returns: ``True`` once :meth:`close` ran.
        """
        return self._is_closed

    @property
    def on_message(self) -> MessageHandler | None:
        """Return the active message handler."""
        return self._on_message

    @on_message.setter
    def on_message(self, handler: MessageHandler | None) -> None:
        """Attach or detach the message handler and flush queued messages.

        :param handler: Handler invoked once per delivered message.
        """
        self._on_message = handler
        if handler is None or len(self._backlog) == 0:
            return
        try:
            loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_backlog()
            return
        loop.call_soon(self._flush_backlog)

    def _flush_backlog(self) -> None:
        while len(self._backlog) > 0 and self._on_message is not None and self._is_closed is False:
            self._dispatch(self._backlog.popleft())

    def _dispatch(self, message: ChannelMessage) -> None:
        handler: MessageHandler | None = self._on_message
        if handler is None:
            self._backlog.append(message)
            return
        try:
            handler(message)
        except Exception:
            logger.exception("[enclave-channel] Unhandled error in message handler")

    def _receive(self, message: ChannelMessage) -> None:
        """Accept one message from the peer.

        :param message: Delivered message.
        """
        if self._is_closed is True:
            return
        if len(self._backlog) > 0:
            self._backlog.append(message)
            self._flush_backlog()
            return
        self._dispatch(message)

    def post_message(self, message: object, transfer: Iterable[object] = ()) -> None:
        """Send one message to the peer port.

        :param message: Message to send.
        :param transfer: Transferable values moved alongside the message.
        :raises ChannelClosedError: If the port is closed, unpaired, or no loop is running.
        :raises DataCloneError: If the message cannot be cloned.
        """
        if self._is_closed is True:
            raise ChannelClosedError("MessagePort is in invalid state (possibly closed)")

        peer: ChannelPort | None = self._peer
        if peer is None:
            raise ChannelClosedError("MessagePort is not entangled with a peer")

        transfer_list: list[object] = list(transfer)
        for item in transfer_list:
            if item is self:
                raise DataCloneError("A ChannelPort cannot transfer itself")

        cloned: object = structured_clone(message, transfer_list)
        ports: list[ChannelPort] = [item for item in transfer_list if isinstance(item, ChannelPort)]

        try:
            loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise ChannelClosedError("No running event loop to deliver the message") from exc
        loop.call_soon(peer._receive, ChannelMessage(cloned, ports))

    def close(self) -> None:
        """Close this port. Later deliveries to it are dropped."""
        self._is_closed = True
        self._on_message = None
        self._backlog.clear()


def create_channel() -> tuple[ChannelPort, ChannelPort]:
    """Create a pair of entangled ports.

    :returns: Tuple of ``(host_port, guest_port)``.
    """
    first: ChannelPort = ChannelPort()
    second: ChannelPort = ChannelPort()
    first._peer = second
    second._peer = first
    return first, second
