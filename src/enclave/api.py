"""User-facing API entrypoints for enclave."""

from collections.abc import Callable
from collections.abc import Mapping

from enclave.config import EnclaveSettings
from enclave.frame import FrameElement
from enclave.sandbox import GuestWindow
from enclave.sandbox import SandboxHost
from enclave.sdk import GuestRuntime


def embed(
    host: SandboxHost,
    name: str,
    src: str,
    base: str | None = None,
    sandbox: str | None = None,
    pathname: str | None = None,
    attributes: Mapping[str, str] | None = None,
    props: Mapping[str, object] | None = None,
    handlers: Mapping[str, Callable[..., object]] | None = None,
    settings: EnclaveSettings | None = None,
) -> FrameElement:
    """Create and mount a host element for one guest app.

    Must be called from a running event loop; initialization continues in the
    background.

    :param host: Embedding page.
    :param name: Frame name.
    :param src: Absolute URL of the guest app.
    :param base: Routing base, defaults to ``/<name>``.
    :param sandbox: Sandbox tokens.
    :param pathname: Initial route.
    :param attributes: Extra string attributes.
    :param props: Initial props, including callables.
    :param handlers: Direct handlers keyed by name such as ``on_save``.
    :param settings: Timeouts and limits.
    :returns: The mounted element.
    """
    element: FrameElement = FrameElement(
        host,
        name=name,
        src=src,
        base=base,
        sandbox=sandbox,
        pathname=pathname,
        attributes=attributes,
        props=props,
        handlers=handlers,
        settings=settings,
    )
    element.mount()
    return element


async def connect_guest(
    window: GuestWindow,
    expected_origin: str | None = None,
    timeout: float | None = None,
    settings: EnclaveSettings | None = None,
) -> GuestRuntime:
    """Create a guest runtime for ``window`` and complete the handshake.

    :param window: Guest window.
    :param expected_origin: Host origin to accept; ``None`` accepts any.
    :param timeout: Handshake timeout in seconds.
    :param settings: Timeouts and limits.
    :returns: An initialized runtime.
    :raises HandshakeError: If the handshake fails.
    """
    runtime: GuestRuntime = GuestRuntime(window, settings=settings)
    await runtime.initialize(expected_origin=expected_origin, timeout=timeout)
    return runtime
