"""In-process sandboxed sub-documents.

A :class:`SandboxHost` plays the part of the embedding page: it maps guest source
locations to guest entry coroutines and creates one :class:`SubDocument` per host
element. Each document owns a :class:`GuestWindow`, the guest's global message
target.
"""

import asyncio
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from urllib.parse import urlsplit

from loguru import logger

from enclave.channel import ChannelPort
from enclave.channel import structured_clone
from enclave.errors import DocumentLoadError

SANDBOX_TOKENS: frozenset[str] = frozenset(
    {
        "allow-downloads",
        "allow-forms",
        "allow-modals",
        "allow-orientation-lock",
        "allow-pointer-lock",
        "allow-popups",
        "allow-popups-to-escape-sandbox",
        "allow-presentation",
        "allow-same-origin",
        "allow-scripts",
        "allow-storage-access-by-user-activation",
        "allow-top-navigation",
        "allow-top-navigation-by-user-activation",
    }
)
OPAQUE_ORIGIN: str = "null"
ANY_ORIGIN: str = "*"

GuestEntry = Callable[["GuestWindow"], Awaitable[object]]


@dataclass(frozen=True)
class SandboxPolicy:
    """Capabilities granted to a sub-document."""

    tokens: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "SandboxPolicy":
        """Parse a space-separated token list.

        :param text: Tokens such as ``"allow-scripts allow-forms"``.
        :returns: Parsed policy with duplicates removed.
        :raises ValueError: If a token is not a known sandbox capability.
        """
        tokens: list[str] = []
        for token in text.split():
            if token not in SANDBOX_TOKENS:
                raise ValueError(f"Unknown sandbox token: {token!r}")
            if token not in tokens:
                tokens.append(token)
        return cls(tuple(tokens))

    def allows(self, token: str) -> bool:
        return token in self.tokens

    def __str__(self) -> str:
        return " ".join(self.tokens)


@dataclass
class WindowMessage:
    """One message delivered to a guest window."""

    data: object
    origin: str
    ports: list[ChannelPort] = field(default_factory=list)


WindowListener = Callable[[WindowMessage], None]


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class GuestWindow:
    """Global message target of one guest context."""

    _url: str
    _origin: str
    _parent_origin: str
    _listeners: list[WindowListener]
    _unload_callbacks: list[Callable[[], None]]
    _is_closed: bool

    def __init__(self, url: str, origin: str, parent_origin: str) -> None:
        """Initialize a window.

        :param url: Document URL.
        :param origin: The window's own origin, ``"null"`` when opaque.
        :param parent_origin: Origin reported for messages the embedder posts.
        """
        self._url = url
        self._origin = origin
        self._parent_origin = parent_origin
        self._listeners = []
        self._unload_callbacks = []
        self._is_closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def pathname(self) -> str:
        """Return the path component of the document URL."""
        path: str = urlsplit(self._url).path
        return path if path else "/"

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def add_message_listener(self, listener: WindowListener) -> None:
        self._listeners.append(listener)

    def remove_message_listener(self, listener: WindowListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_unload_callback(self, callback: Callable[[], None]) -> None:
        self._unload_callbacks.append(callback)

    def remove_unload_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._unload_callbacks:
            self._unload_callbacks.remove(callback)

    def post_message(self, data: object, target_origin: str, transfer: Iterable[object] = ()) -> None:
        """Post a message from the embedder into this window.

        Delivery is asynchronous. When ``target_origin`` is neither ``"*"`` nor
        the window's origin the message is silently dropped.

        :param data: Message data, cloned on send.
        :param target_origin: Origin the sender expects the window to have.
        :param transfer: Ports and buffers moved with the message.
        :raises DataCloneError: If ``data`` cannot be cloned.
        """
        transfer_list: list[object] = list(transfer)
        cloned: object = structured_clone(data, transfer_list)
        if self._is_closed is True:
            return
        if target_origin != ANY_ORIGIN and target_origin != self._origin:
            logger.debug(
                f"[enclave-sandbox] Dropped message for {self._url}: target origin {target_origin} "
                f"does not match {self._origin}"
            )
            return

        ports: list[ChannelPort] = [item for item in transfer_list if isinstance(item, ChannelPort)]
        message: WindowMessage = WindowMessage(cloned, self._parent_origin, ports)
        asyncio.get_running_loop().call_soon(self.dispatch, message)

    def dispatch(self, message: WindowMessage) -> None:
        """Deliver ``message`` to every listener right away."""
        if self._is_closed is True:
            return
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception(f"[enclave-sandbox] Unhandled error in message listener of {self._url}")

    def unload(self) -> None:
        """Fire unload callbacks once and stop delivering messages."""
        if self._is_closed is True:
            return
        self._is_closed = True
        callbacks: list[Callable[[], None]] = list(self._unload_callbacks)
        self._unload_callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"[enclave-sandbox] Unhandled error in unload callback of {self._url}")
        self._listeners.clear()


@dataclass
class _GuestApp:
    src: str
    entry: GuestEntry
    load_delay: float
    fail_load: bool


class SubDocument:
    """One sandboxed sub-document created for a host element."""

    _url: str
    _policy: SandboxPolicy
    _window: GuestWindow
    _loaded: "asyncio.Future[None]"
    _load_task: "asyncio.Task[None] | None"
    _entry_task: "asyncio.Task[object] | None"
    _is_removed: bool

    def __init__(self, url: str, policy: SandboxPolicy, window: GuestWindow) -> None:
        self._url = url
        self._policy = policy
        self._window = window
        self._loaded = asyncio.get_running_loop().create_future()
        self._load_task = None
        self._entry_task = None
        self._is_removed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    @property
    def content_window(self) -> GuestWindow:
        return self._window

    @property
    def loaded(self) -> "asyncio.Future[None]":
        """Future resolved once the document finished loading."""
        return self._loaded

    @property
    def entry_task(self) -> "asyncio.Task[object] | None":
        """Task running the guest entry, when scripts are allowed."""
        return self._entry_task

    @property
    def is_removed(self) -> bool:
        return self._is_removed

    async def _load(self, app: _GuestApp | None) -> None:
        if app is None:
            self._fail(DocumentLoadError(f"No guest app registered for {self._url}"))
            return

        if app.load_delay > 0:
            await asyncio.sleep(app.load_delay)

        if app.fail_load is True:
            self._fail(DocumentLoadError(f"Failed to load {self._url}"))
            return

        if self._policy.allows("allow-scripts") is True:
            self._entry_task = asyncio.get_running_loop().create_task(app.entry(self._window))
            self._entry_task.add_done_callback(self._on_entry_done)
        else:
            logger.debug(f"[enclave-sandbox] Scripts are not allowed in {self._url}, guest entry skipped")

        asyncio.get_running_loop().call_soon(self._resolve_loaded)

    def _resolve_loaded(self) -> None:
        if self._loaded.done() is False:
            self._loaded.set_result(None)

    def _fail(self, exc: Exception) -> None:
        if self._loaded.done() is False:
            self._loaded.set_exception(exc)

    def _on_entry_done(self, task: "asyncio.Task[object]") -> None:
        if task.cancelled() is True:
            return
        exc: BaseException | None = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"[enclave-sandbox] Guest entry of {self._url} crashed")

    def remove(self) -> None:
        """Unload the document and stop its guest. Idempotent."""
        if self._is_removed is True:
            return
        self._is_removed = True
        self._window.unload()
        if self._load_task is not None:
            self._load_task.cancel()
        if self._entry_task is not None:
            self._entry_task.cancel()
        if self._loaded.done() is False:
            self._loaded.cancel()


class SandboxHost:
    """Embedding page that creates sandboxed sub-documents for guest apps."""

    _origin: str
    _apps: list[_GuestApp]
    _documents: list[SubDocument]

    def __init__(self, origin: str) -> None:
        """Initialize a host.

        :param origin: Origin of the embedding page, reported on posted messages.
        """
        self._origin = origin
        self._apps = []
        self._documents = []

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def documents(self) -> list[SubDocument]:
        """Return documents that have not been removed."""
        return [document for document in self._documents if document.is_removed is False]

    def register_app(
        self,
        src: str,
        entry: GuestEntry,
        load_delay: float = 0.0,
        fail_load: bool = False,
    ) -> None:
        """Serve ``entry`` for every document URL under ``src``.

        :param src: Absolute URL prefix of the guest app.
        :param entry: ``async def entry(window)`` run inside the document.
        :param load_delay: Seconds before the document reports loaded.
        :param fail_load: Make every load of this app fail.
        """
        prefix: str = src[:-1] if src.endswith("/") else src
        self._apps.append(_GuestApp(prefix, entry, load_delay, fail_load))

    def _find_app(self, url: str) -> _GuestApp | None:
        best: _GuestApp | None = None
        for app in self._apps:
            if url != app.src and url.startswith(app.src + "/") is False and url.startswith(app.src + "?") is False:
                continue
            if best is None or len(app.src) > len(best.src):
                best = app
        return best

    def create_document(self, url: str, policy: SandboxPolicy) -> SubDocument:
        """Create and start loading a sub-document.

        :param url: Document URL.
        :param policy: Sandbox capabilities of the document.
        :returns: The document; await :attr:`SubDocument.loaded` for completion.
        """
        origin: str = _origin_of(url) if policy.allows("allow-same-origin") is True else OPAQUE_ORIGIN
        window: GuestWindow = GuestWindow(url, origin, self._origin)
        document: SubDocument = SubDocument(url, policy, window)
        document._load_task = asyncio.get_running_loop().create_task(document._load(self._find_app(url)))
        self._documents.append(document)
        return document
