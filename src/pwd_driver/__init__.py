"""Docker-machine style driver for Play-with-Docker session instances."""

from .config import CREATE_FLAGS, DriverConfig, Flag, parse_session_url
from .driver import DRIVER_NAME, SENTINEL_DRIVER_NAME, PwdDriver
from .exceptions import (
    CertificateNotFoundError,
    ConfigurationError,
    GenerationError,
    PwdDriverError,
    StoreIOError,
    TransportError,
    UnsupportedOperationError,
)
from .identity import (
    AliasHostEncoding,
    ArchiveIdentityStrategy,
    EmbeddedIdentityStrategy,
    HostEncoding,
    IdentityStrategy,
    IpHostEncoding,
    ProvisioningContext,
    PushKeysIdentityStrategy,
    select_host_encoding,
    select_strategy,
)
from .keygen import (
    ServerKeyPair,
    bootstrap_certificates,
    generate_private_key,
    generate_server_certificate,
    generate_server_certificate_files,
    issue_server_certificate,
)
from .logging_utils import configure_logging
from .models import (
    CertificateBundle,
    DriverRecord,
    DriverState,
    Instance,
    MachineState,
    RemoteEndpoint,
)
from .store import CertificateStore
from .transport import SessionTransportClient

__all__ = [
    "CREATE_FLAGS",
    "DRIVER_NAME",
    "SENTINEL_DRIVER_NAME",
    "AliasHostEncoding",
    "ArchiveIdentityStrategy",
    "CertificateBundle",
    "CertificateNotFoundError",
    "CertificateStore",
    "ConfigurationError",
    "DriverConfig",
    "DriverRecord",
    "DriverState",
    "EmbeddedIdentityStrategy",
    "Flag",
    "GenerationError",
    "HostEncoding",
    "IdentityStrategy",
    "Instance",
    "IpHostEncoding",
    "MachineState",
    "ProvisioningContext",
    "PushKeysIdentityStrategy",
    "PwdDriver",
    "PwdDriverError",
    "RemoteEndpoint",
    "ServerKeyPair",
    "SessionTransportClient",
    "StoreIOError",
    "TransportError",
    "UnsupportedOperationError",
    "bootstrap_certificates",
    "configure_logging",
    "generate_private_key",
    "generate_server_certificate",
    "generate_server_certificate_files",
    "issue_server_certificate",
    "parse_session_url",
    "select_host_encoding",
    "select_strategy",
]
