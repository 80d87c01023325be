"""Tests for the host element and its configuration."""

import asyncio
import gc
from collections.abc import Callable

import pytest
from pydantic import ValidationError

from enclave import FrameElement
from enclave import FrameState
from enclave import GuestRuntime
from enclave import SandboxHost
from enclave import embed
from enclave.config import DEFAULT_SANDBOX
from enclave.config import FrameConfig
from enclave.errors import ChannelClosedError
from enclave.errors import FunctionNotFoundError
from enclave.frame import handler_name_for
from enclave.watch import PropChanges
from tests.fixtures.guest_apps import FAST_SETTINGS
from tests.fixtures.guest_apps import GUEST_SRC
from tests.fixtures.guest_apps import RecordingGuest
from tests.fixtures.guest_apps import flush
from tests.fixtures.guest_apps import open_frame


def _collector(frame: FrameElement, event_name: str) -> list[object]:
    received: list[object] = []
    frame.on(event_name, received.append)
    return received


def test_frame_config_normalizes_routing_fields() -> None:
    """Derive base, pathname, origin and document URL from attributes."""
    config: FrameConfig = FrameConfig(name="settings", src=f"{GUEST_SRC}/", pathname="profile")
    assert config.normalized_base == "/settings"
    assert config.pathname == "/profile"
    assert config.origin == "https://guest.example"
    assert config.document_url == f"{GUEST_SRC}/profile"
    assert config.sandbox == DEFAULT_SANDBOX
    assert config.sandbox_policy.allows("allow-scripts") is True

    custom: FrameConfig = FrameConfig(name="x", src=GUEST_SRC, base="ui/", sandbox="allow-scripts  allow-scripts")
    assert custom.normalized_base == "/ui"
    assert custom.sandbox == "allow-scripts"
    assert custom.pathname == "/"


@pytest.mark.parametrize(
    "fields",
    [
        {"name": "", "src": GUEST_SRC},
        {"name": "app", "src": "/relative/path"},
        {"name": "app", "src": GUEST_SRC, "sandbox": "allow-everything"},
    ],
)
def test_frame_config_rejects_invalid_fields(fields: dict[str, str]) -> None:
    """Refuse empty names, relative sources and unknown sandbox tokens."""
    with pytest.raises(ValidationError):
        FrameConfig(**fields)


def test_handler_names_follow_event_names() -> None:
    """Map event names to ``on_*`` handler names."""
    assert handler_name_for("save") == "on_save"
    assert handler_name_for("state:change") == "on_state_change"
    assert handler_name_for("User.Action-Done") == "on_user_action_done"


@pytest.mark.asyncio
async def test_initialization_waits_for_both_name_and_src() -> None:
    """Start only once the element is mounted and has a name and a source."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost = SandboxHost("https://shell.example")
    host.register_app(GUEST_SRC, guest)
    frame: FrameElement = FrameElement(host, settings=FAST_SETTINGS)
    try:
        frame.mount()
        frame.set_attribute("src", GUEST_SRC)
        assert frame.state is FrameState.UNCONFIGURED

        frame.set_attribute("name", "late")
        assert frame.state is FrameState.CONNECTING

        await frame.wait_until_ready(1.0)
        await flush()
        assert frame.is_ready is True
        assert guest.runtime.props["name"] == "late"
        assert guest.runtime.props["base"] == "/late"
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_invalid_configuration_reports_an_error() -> None:
    """Emit an error and stay unconfigured when validation fails."""
    host: SandboxHost = SandboxHost("https://shell.example")
    frame: FrameElement = FrameElement(host, name="bad", src="not-a-url", settings=FAST_SETTINGS)
    errors: list[object] = _collector(frame, "error")
    try:
        frame.mount()
        assert frame.state is FrameState.UNCONFIGURED
        assert len(errors) == 1
        assert errors[0]["message"] == "Initialization failed"
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_handshake_snapshot_merges_config_attributes_and_props() -> None:
    """Let props override attributes and skip reserved attribute names."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(
        guest,
        name="settings",
        pathname="profile",
        attributes={"theme": "from-attribute", "color": "blue", "__proto__": "x"},
        props={"theme": "from-prop", "count": 3},
    )
    try:
        assert dict(guest.runtime.props) == {
            "base": "/settings",
            "name": "settings",
            "pathname": "/profile",
            "theme": "from-prop",
            "color": "blue",
            "count": 3,
        }
        assert guest.window.pathname == "/app/profile"
    finally:
        frame.remove()


@pytest.mark.parametrize(
    "register_kwargs, src",
    [
        ({"load_delay": 2.0}, GUEST_SRC),
        ({"fail_load": True}, GUEST_SRC),
        ({}, "https://unknown.example/app"),
    ],
    ids=["timeout", "failed", "no-app"],
)
@pytest.mark.asyncio
async def test_load_failures_emit_error_and_stay_connecting(register_kwargs: dict[str, object], src: str) -> None:
    """Report load failures without ever reaching the ready state."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost = SandboxHost("https://shell.example")
    host.register_app(GUEST_SRC, guest, **register_kwargs)
    failed: asyncio.Event = asyncio.Event()
    errors: list[object] = []

    def on_error(detail: object) -> None:
        errors.append(detail)
        failed.set()

    frame: FrameElement = embed(host, "broken", src, settings=FAST_SETTINGS)
    frame.on("error", on_error)
    try:
        await asyncio.wait_for(failed.wait(), 2.0)
        assert errors[0]["message"] == "Sub-document load failed"
        assert frame.state is FrameState.CONNECTING
        assert guest.runtime is None
    finally:
        frame.remove()


@pytest.mark.parametrize("sandbox", ["allow-same-origin", "allow-scripts"], ids=["no-scripts", "opaque-origin"])
@pytest.mark.asyncio
async def test_guest_without_scripts_or_origin_never_gets_ready(sandbox: str) -> None:
    """Keep connecting when the guest cannot run or cannot be addressed."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost = SandboxHost("https://shell.example")
    host.register_app(GUEST_SRC, guest)
    frame: FrameElement = embed(host, "locked", GUEST_SRC, sandbox=sandbox, settings=FAST_SETTINGS)
    try:
        with pytest.raises(asyncio.TimeoutError):
            await frame.wait_until_ready(0.2)
        assert frame.state is FrameState.CONNECTING
        if sandbox == "allow-scripts":
            assert guest.window.origin == "null"
            await asyncio.wait_for(guest.failed.wait(), 2.0)
            assert guest.runtime.is_initialized is False
        else:
            assert guest.window is None
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_attribute_changes_are_forwarded() -> None:
    """Forward set and removed attributes with routing fields normalized."""
    changes: list[PropChanges] = []
    guest: RecordingGuest = RecordingGuest(setup=lambda runtime: runtime.watch(changes.append))
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest, attributes={"theme": "dark"})
    try:
        frame.set_attribute("theme", "light")
        frame.set_attribute("theme", "light")
        frame.set_attribute("pathname", "settings")
        frame.set_attribute("sandbox", "allow-scripts")
        frame.remove_attribute("theme")
        await flush()

        assert changes == [
            {"theme": ("light", "dark")},
            {"pathname": ("/settings", "/")},
            {"theme": (None, "light")},
        ]
        assert guest.runtime.props["theme"] is None
        assert "sandbox" not in guest.runtime.props
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_overwritten_function_props_release_the_old_function() -> None:
    """Release the previous function token when a prop is replaced."""
    guest: RecordingGuest = RecordingGuest()

    def first_save(data: object) -> str:
        return "first"

    def second_save(data: object) -> str:
        return "second"

    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest, props={"on_save": first_save})
    try:
        old_proxy: object = guest.runtime.props["on_save"]
        assert await old_proxy({}) == "first"
        assert frame.function_manager.has_function(old_proxy.fn_id) is True

        frame.props["on_save"] = second_save
        await flush()

        assert frame.function_manager.has_function(old_proxy.fn_id) is False
        with pytest.raises(FunctionNotFoundError):
            await old_proxy({})
        new_proxy: object = guest.runtime.props["on_save"]
        assert await new_proxy({}) == "second"
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_repeated_function_prop_overwrites_keep_release_bookkeeping_bounded() -> None:
    """Leave no revoked ids behind once replaced proxies are collected."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest, props={"cb": lambda: 0})
    try:
        for index in range(50):
            frame.props["cb"] = lambda: index
            await flush()
            gc.collect()
            await flush()

        assert frame.function_manager.revoked_count == 0
        assert frame.function_manager.registry_size == 1
        assert guest.runtime.function_manager.revoked_count == 0
        assert await guest.runtime.props["cb"]() == 49
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_commit_resends_props_mutated_in_place() -> None:
    """Push in-place mutations that plain assignment cannot observe."""
    guest: RecordingGuest = RecordingGuest()
    items: list[str] = ["a"]
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest, props={"items": items, "mode": "list"})
    try:
        items.append("b")
        await flush()
        assert guest.runtime.props["items"] == ["a"]

        sent: int = frame.commit()
        await flush()
        assert sent == 2
        assert guest.runtime.props["items"] == ["a", "b"]
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_registered_functions_can_be_invoked_by_name() -> None:
    """Track guest registrations and call them from the host."""
    handles: dict[str, Callable[[], None]] = {}

    def setup(runtime: GuestRuntime) -> None:
        handles["add"] = runtime.register("add", lambda left, right: left + right)

    guest: RecordingGuest = RecordingGuest(setup=setup)
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest, name="calc")
    try:
        assert frame.registered_functions == frozenset({"add"})
        assert await frame.invoke("add", 2, 3) == 5

        with pytest.raises(FunctionNotFoundError, match="Function 'missing' not registered by guest frame 'calc'"):
            await frame.invoke("missing")

        handles["add"]()
        await flush()
        assert frame.registered_functions == frozenset()
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_guest_events_reach_listeners_and_direct_handlers() -> None:
    """Deliver guest events to listeners first, then to the direct handler."""
    order: list[str] = []
    handled: asyncio.Event = asyncio.Event()

    async def on_saved(data: object) -> None:
        order.append(f"async-handler:{data}")
        handled.set()

    def setup(runtime: GuestRuntime) -> None:
        runtime.emit("state:change", {"route": "/x"})
        runtime.emit("saved", "draft")

    guest: RecordingGuest = RecordingGuest(setup=setup)
    host: SandboxHost = SandboxHost("https://shell.example")
    host.register_app(GUEST_SRC, guest)
    frame: FrameElement = FrameElement(
        host,
        name="events",
        src=GUEST_SRC,
        handlers={"on_state_change": lambda data: order.append(f"handler:{data['route']}")},
        settings=FAST_SETTINGS,
    )
    frame.on("state:change", lambda data: order.append(f"listener:{data['route']}"))
    frame.bind_handler("on_saved", on_saved)
    try:
        frame.mount()
        await frame.wait_until_ready(1.0)
        await asyncio.wait_for(handled.wait(), 1.0)
        assert order == ["listener:/x", "handler:/x", "async-handler:draft"]

        with pytest.raises(ValueError):
            frame.bind_handler("saved", on_saved)
        with pytest.raises(TypeError):
            frame.bind_handler("on_saved", "not-callable")
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_emit_sends_events_with_callbacks_and_transferables() -> None:
    """Send host events whose callbacks and buffers work on the guest side."""
    guest: RecordingGuest = RecordingGuest(subscribe=["navigate", "frame"])
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest)
    pixels: bytearray = bytearray(b"\x00\x01\x02")
    try:
        assert frame.emit("bad name", 1) is False
        assert frame.emit("navigate", {"path": "/a", "done": lambda path: f"at {path}"}) is True
        assert frame.emit("frame", {"pixels": pixels}) is True
        await flush()

        navigate: dict[str, object] = guest.events[0][1]
        assert navigate["path"] == "/a"
        assert await navigate["done"]("/a") == "at /a"
        assert guest.events[1][1]["pixels"] is pixels
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_send_failures_emit_message_send_failed() -> None:
    """Report an unclonable payload instead of raising."""
    guest: RecordingGuest = RecordingGuest()
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest)
    failures: list[object] = _collector(frame, "message-send-failed")
    try:
        sent: bool = frame.emit("navigate", {"buffer": bytearray(b"x"), "handle": object()})
        assert sent is False
        assert len(failures) == 1
        assert failures[0]["transferables_count"] == 1
        assert failures[0]["message"]["type"] == "event"
        assert "object" in failures[0]["error"]
        assert frame.function_manager.registry_size == 0
    finally:
        frame.remove()


@pytest.mark.asyncio
async def test_remove_tears_down_both_sides() -> None:
    """Reject pending calls, clean up the guest and stay removed."""

    async def slow() -> None:
        await asyncio.sleep(10)

    guest: RecordingGuest = RecordingGuest(setup=lambda runtime: runtime.register("slow", slow))
    host: SandboxHost
    frame: FrameElement
    host, frame = await open_frame(guest)
    pending: asyncio.Future[object] = frame.invoke("slow")
    await flush()

    frame.remove()
    frame.remove()

    with pytest.raises(ChannelClosedError):
        await pending
    assert frame.state is FrameState.TORN_DOWN
    assert guest.runtime.is_initialized is False
    assert guest.window.is_closed is True
    assert host.documents == []
    assert frame.emit("navigate", 1) is False
    assert frame.registered_functions == frozenset()
    with pytest.raises(ChannelClosedError):
        await frame.wait_until_ready(0.1)
