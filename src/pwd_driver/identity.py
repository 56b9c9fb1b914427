from __future__ import annotations

import io
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .exceptions import ConfigurationError, StoreIOError
from .keygen import generate_private_key, generate_server_certificate_files
from .models import DriverRecord, Instance
from .store import (
    CA_CERT,
    CA_KEY,
    CLIENT_CERT,
    CLIENT_KEY,
    SERVER_CERT,
    SERVER_KEY,
    CertificateStore,
)
from .transport import SessionTransportClient

_logger = logging.getLogger("pwd_driver.identity")

ENGINE_PORT = "2375"
SESSION_PREFIX_LENGTH = 8


def session_prefix(session_id: str) -> str:
    return session_id[:SESSION_PREFIX_LENGTH]


def connection_url(host: str, tls_port: str) -> str:
    return f"tcp://{host}:{tls_port}"


class HostEncoding(ABC):
    """Derives the externally reachable engine hostname for an instance."""

    name: str = ""
    known_before_allocation: bool = False
    # The remote must be told the alias, or the encoded host never resolves.
    requires_remote_alias: bool = False

    @abstractmethod
    def encode(
        self,
        *,
        hostname: str,
        session_id: str,
        ip_address: str | None = None,
        alias: str | None = None,
    ) -> str:
        raise NotImplementedError


class IpHostEncoding(HostEncoding):
    """``ip10_0_0_5-2375.<hostname>``; needs the remotely assigned IP."""

    name = "ip"

    def encode(
        self,
        *,
        hostname: str,
        session_id: str,
        ip_address: str | None = None,
        alias: str | None = None,
    ) -> str:
        if not ip_address:
            raise ConfigurationError("IP host encoding requires an allocated instance IP.")
        return f"ip{ip_address.replace('.', '_')}-{ENGINE_PORT}.{hostname}"


class AliasHostEncoding(HostEncoding):
    """``pwd<alias>-<session prefix>-2375.<hostname>``; known before allocation."""

    name = "alias"
    known_before_allocation = True
    requires_remote_alias = True

    def encode(
        self,
        *,
        hostname: str,
        session_id: str,
        ip_address: str | None = None,
        alias: str | None = None,
    ) -> str:
        if not alias:
            raise ConfigurationError("Alias host encoding requires an instance alias.")
        return f"pwd{alias}-{session_prefix(session_id)}-{ENGINE_PORT}.{hostname}"


HOST_ENCODINGS: dict[str, type[HostEncoding]] = {
    IpHostEncoding.name: IpHostEncoding,
    AliasHostEncoding.name: AliasHostEncoding,
}


def select_host_encoding(name: str) -> HostEncoding:
    encoding = HOST_ENCODINGS.get(name.strip().lower())
    if encoding is None:
        raise ConfigurationError(
            f"Unsupported host encoding '{name}'. Use one of: {', '.join(sorted(HOST_ENCODINGS))}."
        )
    return encoding()


def new_alias() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ProvisioningContext:
    """Collaborators an identity strategy works with during one create()."""

    record: DriverRecord
    transport: SessionTransportClient
    store: CertificateStore
    org: str

    @property
    def session_id(self) -> str:
        return self.record.session_id

    @property
    def hostname(self) -> str:
        return self.record.endpoint.hostname

    @property
    def tls_port(self) -> str:
        return self.record.endpoint.tls_port


class IdentityStrategy(ABC):
    """
    One way of getting a TLS identity onto a remote instance.

    provision() allocates the instance and returns it with its connection URL
    set; the caller owns the lifecycle state.
    """

    name: str = ""
    default_host_encoding: type[HostEncoding] = IpHostEncoding
    sends_alias: bool = False

    def __init__(self, host_encoding: HostEncoding | None = None) -> None:
        self.host_encoding = host_encoding or self.default_host_encoding()
        if self.host_encoding.requires_remote_alias and not self.sends_alias:
            raise ConfigurationError(
                f"'{self.host_encoding.name}' host encoding needs the alias sent to the remote; "
                f"the '{self.name}' identity strategy does not send one."
            )

    def _encode_host(
        self,
        ctx: ProvisioningContext,
        *,
        ip_address: str | None = None,
        alias: str | None = None,
    ) -> str:
        return self.host_encoding.encode(
            hostname=ctx.hostname,
            session_id=ctx.session_id,
            ip_address=ip_address,
            alias=alias,
        )

    def _issue_server_certificate(self, ctx: ProvisioningContext, hosts: list[str]) -> None:
        ctx.store.copy_shared_to_instance()
        generate_server_certificate_files(
            hosts,
            ctx.org,
            ctx.store.shared(CA_CERT),
            ctx.store.shared(CA_KEY),
            cert_file=ctx.store.resolve(SERVER_CERT),
            key_file=ctx.store.resolve(SERVER_KEY),
            store=ctx.store,
        )

    @abstractmethod
    def provision(self, ctx: ProvisioningContext) -> Instance:
        raise NotImplementedError


class ArchiveIdentityStrategy(IdentityStrategy):
    """Fetch the remote's key archive, then allocate a plain instance."""

    name = "archive"
    required_entries = (CA_CERT, CLIENT_CERT, CLIENT_KEY)

    def provision(self, ctx: ProvisioningContext) -> Instance:
        written: list[str] = []
        for name, content in ctx.transport.fetch_cert_archive():
            ctx.store.fan_out(name, io.BytesIO(content))
            written.append(name)
        _logger.info("Installed %d key archive entries: %s", len(written), written)

        missing = [
            name for name in self.required_entries if not ctx.store.resolve(name).is_file()
        ]
        if missing:
            raise StoreIOError(
                f"Key archive did not provide required entries: {', '.join(missing)}"
            )

        instance = ctx.transport.create_instance(ctx.session_id)
        host = self._encode_host(ctx, ip_address=instance.ip_address)
        instance.url = connection_url(host, ctx.tls_port)
        return instance


class EmbeddedIdentityStrategy(IdentityStrategy):
    """Send the full certificate bundle with the create request."""

    name = "embedded"
    default_host_encoding = AliasHostEncoding
    sends_alias = True

    def __init__(self, host_encoding: HostEncoding | None = None) -> None:
        super().__init__(host_encoding)
        if not self.host_encoding.known_before_allocation:
            raise ConfigurationError(
                f"Embedded identity needs a host known before allocation; "
                f"'{self.host_encoding.name}' encoding is not."
            )

    def provision(self, ctx: ProvisioningContext) -> Instance:
        alias = new_alias()
        host = self._encode_host(ctx, alias=alias)
        self._issue_server_certificate(ctx, [host])
        bundle = ctx.store.read_bundle()

        instance = ctx.transport.create_instance_with_identity(
            ctx.session_id, bundle, alias
        )
        instance.url = connection_url(host, ctx.tls_port)
        instance.ssh_user = (
            f"{instance.ip_address.replace('.', '-')}-{session_prefix(ctx.session_id)}"
        )
        ctx.record.extra["alias"] = alias
        generate_private_key(ctx.store.ssh_key_path)
        return instance


class PushKeysIdentityStrategy(IdentityStrategy):
    """Allocate a plain instance, then push its server keys in a second call."""

    name = "push"

    def provision(self, ctx: ProvisioningContext) -> Instance:
        instance = ctx.transport.create_instance(ctx.session_id)
        host = self._encode_host(ctx, ip_address=instance.ip_address)
        try:
            self._issue_server_certificate(ctx, [instance.ip_address, host])
            server_cert = ctx.store.read(ctx.store.resolve(SERVER_CERT))
            server_key = ctx.store.read(ctx.store.resolve(SERVER_KEY))
            ctx.transport.push_keys(ctx.session_id, instance.name, server_cert, server_key)
        except Exception:
            _logger.error(
                "Identity installation failed; instance name=%s was allocated but not recorded",
                instance.name,
            )
            raise
        instance.url = connection_url(host, ctx.tls_port)
        return instance


IDENTITY_STRATEGIES: dict[str, type[IdentityStrategy]] = {
    ArchiveIdentityStrategy.name: ArchiveIdentityStrategy,
    EmbeddedIdentityStrategy.name: EmbeddedIdentityStrategy,
    PushKeysIdentityStrategy.name: PushKeysIdentityStrategy,
}


def select_strategy(name: str, host_encoding: str | None = None) -> IdentityStrategy:
    strategy = IDENTITY_STRATEGIES.get(name.strip().lower())
    if strategy is None:
        raise ConfigurationError(
            f"Unsupported identity strategy '{name}'. "
            f"Use one of: {', '.join(sorted(IDENTITY_STRATEGIES))}."
        )
    encoding = select_host_encoding(host_encoding) if host_encoding else None
    return strategy(encoding)
