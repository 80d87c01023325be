"""Configuration models for host elements and runtime limits."""

from urllib.parse import urlsplit

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict

from enclave.sandbox import SandboxPolicy

DEFAULT_SANDBOX: str = "allow-scripts allow-same-origin allow-forms allow-popups allow-modals"
DEFAULT_PATHNAME: str = "/"

CONFIG_ATTRIBUTE_NAMES: frozenset[str] = frozenset({"src", "sandbox", "base", "name", "pathname"})


def normalize_base(base: str | None, name: str) -> str:
    """Return the routing base for a frame.

    Falls back to ``/<name>``, forces a leading slash and drops one trailing slash.

    :param base: Configured base, possibly empty.
    :param name: Frame name.
    :returns: Normalized base path.
    """
    value: str = base if base else f"/{name}"
    if value.startswith("/") is False:
        value = f"/{value}"
    if len(value) > 1 and value.endswith("/"):
        value = value[:-1]
    return value


def normalize_pathname(pathname: str | None) -> str:
    """Return the initial route, defaulting to ``/`` and forcing a leading slash."""
    if pathname is None or pathname.strip() == "":
        return DEFAULT_PATHNAME
    if pathname.startswith("/") is True:
        return pathname
    return f"/{pathname}"


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for an absolute URL.

    :param url: Absolute URL.
    :returns: Origin string.
    :raises ValueError: If ``url`` is not absolute.
    """
    parts = urlsplit(url)
    if parts.scheme == "" or parts.netloc == "":
        raise ValueError(f"Expected an absolute URL, got {url!r}")
    return f"{parts.scheme}://{parts.netloc}"


class FrameConfig(BaseModel):
    """Validated configuration of one host element."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    src: str
    base: str | None = None
    sandbox: str = DEFAULT_SANDBOX
    pathname: str = DEFAULT_PATHNAME

    @field_validator("src")
    @classmethod
    def check_src(cls, value: str) -> str:
        origin_of(value)
        return value

    @field_validator("sandbox")
    @classmethod
    def check_sandbox(cls, value: str) -> str:
        return str(SandboxPolicy.parse(value))

    @field_validator("pathname", mode="before")
    @classmethod
    def check_pathname(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return normalize_pathname(value)
        return value

    @property
    def normalized_base(self) -> str:
        """Return the routing base handed to the guest."""
        return normalize_base(self.base, self.name)

    @property
    def origin(self) -> str:
        """Return the guest origin derived from ``src``."""
        return origin_of(self.src)

    @property
    def document_url(self) -> str:
        """Return ``src`` without a trailing slash, followed by ``pathname``."""
        src: str = self.src[:-1] if self.src.endswith("/") else self.src
        return src + self.pathname

    @property
    def sandbox_policy(self) -> SandboxPolicy:
        return SandboxPolicy.parse(self.sandbox)


class EnclaveSettings(BaseSettings):
    """Timeouts and limits, overridable with ``ENCLAVE_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="ENCLAVE_")

    function_call_timeout: float = Field(default=5.0, gt=0)
    load_timeout: float = Field(default=10.0, gt=0)
    init_timeout: float = Field(default=10.0, gt=0)
    max_serialization_depth: int = Field(default=100, ge=1)
    max_functions: int = Field(default=1000, ge=1)
    event_buffer_limit: int = Field(default=100, ge=0)
