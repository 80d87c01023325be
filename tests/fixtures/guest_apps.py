"""Guest apps and helpers shared by the frame and end-to-end tests."""

import asyncio
from collections.abc import Awaitable
from collections.abc import Callable

from enclave import EnclaveSettings
from enclave import FrameElement
from enclave import GuestRuntime
from enclave import GuestWindow
from enclave import HandshakeError
from enclave import SandboxHost
from enclave import embed

SHELL_ORIGIN: str = "https://shell.example"
GUEST_ORIGIN: str = "https://guest.example"
GUEST_SRC: str = f"{GUEST_ORIGIN}/app"

FAST_SETTINGS: EnclaveSettings = EnclaveSettings(
    function_call_timeout=0.5,
    load_timeout=0.5,
    init_timeout=0.5,
)

GuestSetup = Callable[[GuestRuntime], Awaitable[None] | None]


async def flush(iterations: int = 20) -> None:
    """Let queued channel deliveries and callbacks run.

    :param iterations: Number of loop turns to yield.
    """
    for _ in range(iterations):
        await asyncio.sleep(0)


class RecordingGuest:
    """Guest entry that connects, records what it sees and runs an optional setup."""

    runtime: GuestRuntime | None
    window: GuestWindow | None
    error: HandshakeError | None
    events: list[tuple[str, object]]
    connected: asyncio.Event
    failed: asyncio.Event

    _setup: GuestSetup | None
    _expected_origin: str | None
    _subscribe: list[str]

    def __init__(
        self,
        setup: GuestSetup | None = None,
        expected_origin: str | None = SHELL_ORIGIN,
        subscribe: list[str] | None = None,
    ) -> None:
        """Initialize the guest.

        :param setup: Optional callback run with the connected runtime.
        :param expected_origin: Host origin to accept.
        :param subscribe: Event names recorded into :attr:`events` right after connecting.
        """
        self.runtime = None
        self.window = None
        self.error = None
        self.events = []
        self.connected = asyncio.Event()
        self.failed = asyncio.Event()
        self._setup = setup
        self._expected_origin = expected_origin
        self._subscribe = list(subscribe) if subscribe is not None else []

    async def __call__(self, window: GuestWindow) -> None:
        """Guest entry point.

        :param window: Guest window.
        """
        self.window = window
        runtime: GuestRuntime = GuestRuntime(window, settings=FAST_SETTINGS)
        self.runtime = runtime
        try:
            await runtime.initialize(expected_origin=self._expected_origin)
        except HandshakeError as exc:
            self.error = exc
            self.failed.set()
            return

        for event_name in self._subscribe:
            runtime.on(event_name, self._recorder(event_name))

        if self._setup is not None:
            result: object = self._setup(runtime)
            if asyncio.iscoroutine(result) is True:
                await result
        self.connected.set()

    def _recorder(self, event_name: str) -> Callable[[object], None]:
        def record(data: object) -> None:
            self.events.append((event_name, data))

        return record


class LateSubscriberGuest(RecordingGuest):
    """Guest that subscribes to ``navigate`` only after :attr:`gate` is set."""

    gate: asyncio.Event
    routes: list[object]

    def __init__(self) -> None:
        super().__init__(setup=self._subscribe_late)
        self.gate = asyncio.Event()
        self.routes = []

    async def _subscribe_late(self, runtime: GuestRuntime) -> None:
        self.connected.set()
        await self.gate.wait()
        runtime.on("navigate", self.routes.append)


async def open_frame(
    guest: Callable[[GuestWindow], Awaitable[object]],
    name: str = "guest",
    host_origin: str = SHELL_ORIGIN,
    **kwargs: object,
) -> tuple[SandboxHost, FrameElement]:
    """Serve ``guest`` at :data:`GUEST_SRC`, embed it and wait until it is ready.

    :param guest: Guest entry.
    :param name: Frame name.
    :param host_origin: Origin of the embedding page.
    :param kwargs: Extra arguments for :func:`enclave.embed`.
    :returns: The host and the ready element.
    """
    host: SandboxHost = SandboxHost(host_origin)
    host.register_app(GUEST_SRC, guest)
    kwargs.setdefault("settings", FAST_SETTINGS)
    frame: FrameElement = embed(host, name, GUEST_SRC, **kwargs)
    await frame.wait_until_ready(1.0)
    await flush()
    return host, frame
