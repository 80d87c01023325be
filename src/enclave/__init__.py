"""Public package API for enclave."""

from enclave.api import connect_guest
from enclave.api import embed
from enclave.channel import ChannelPort
from enclave.channel import create_channel
from enclave.config import EnclaveSettings
from enclave.config import FrameConfig
from enclave.errors import CallTimeoutError
from enclave.errors import ChannelClosedError
from enclave.errors import DataCloneError
from enclave.errors import DocumentLoadError
from enclave.errors import EnclaveError
from enclave.errors import EnclaveProtocolError
from enclave.errors import EnclaveRemoteError
from enclave.errors import FunctionCallError
from enclave.errors import FunctionNotFoundError
from enclave.errors import FunctionRegistryFullError
from enclave.errors import HandshakeError
from enclave.errors import HandshakeTimeoutError
from enclave.errors import MissingPortError
from enclave.errors import OriginMismatchError
from enclave.errors import ResourceLimitError
from enclave.errors import SerializationDepthError
from enclave.errors import TransportError
from enclave.frame import FrameElement
from enclave.frame import FrameState
from enclave.frame import ObservableProps
from enclave.functions import FunctionManager
from enclave.functions import RemoteFunction
from enclave.sandbox import GuestWindow
from enclave.sandbox import SandboxHost
from enclave.sandbox import SandboxPolicy
from enclave.sandbox import SubDocument
from enclave.sdk import GuestRuntime
from enclave.sdk import PropsBag
from enclave.watch import PropertyWatcher

__all__: list[str] = [
    "connect_guest",
    "create_channel",
    "embed",
    "ChannelPort",
    "EnclaveSettings",
    "FrameConfig",
    "FrameElement",
    "FrameState",
    "FunctionManager",
    "GuestRuntime",
    "GuestWindow",
    "ObservableProps",
    "PropertyWatcher",
    "PropsBag",
    "RemoteFunction",
    "SandboxHost",
    "SandboxPolicy",
    "SubDocument",
    "CallTimeoutError",
    "ChannelClosedError",
    "DataCloneError",
    "DocumentLoadError",
    "EnclaveError",
    "EnclaveProtocolError",
    "EnclaveRemoteError",
    "FunctionCallError",
    "FunctionNotFoundError",
    "FunctionRegistryFullError",
    "HandshakeError",
    "HandshakeTimeoutError",
    "MissingPortError",
    "OriginMismatchError",
    "ResourceLimitError",
    "SerializationDepthError",
    "TransportError",
]
