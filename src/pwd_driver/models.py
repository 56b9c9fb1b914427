from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class DriverState(str, Enum):
    """Lifecycle of one provisioning record."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    CREATED = "created"
    REMOVED = "removed"


class MachineState(str, Enum):
    """Engine state as reported to the host tool."""

    NONE = ""
    RUNNING = "Running"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def key_push_payload(server_cert: bytes, server_key: bytes) -> dict[str, str]:
    return {
        "server_cert": _b64(server_cert),
        "server_key": _b64(server_key),
    }


@dataclass(frozen=True)
class RemoteEndpoint:
    hostname: str
    api_port: str = "80"
    tls_port: str = "443"

    @property
    def api_base_url(self) -> str:
        return f"http://{self.hostname}:{self.api_port}"


@dataclass(frozen=True)
class CertificateBundle:
    """
    PEM material establishing mutual TLS trust with one remote engine.

    Server material is specific to one instance. CA and client material are
    shared by every instance created from the same local store.
    """

    server_cert: bytes
    server_key: bytes
    ca_cert: bytes
    client_cert: bytes
    client_key: bytes

    def to_identity_payload(self, alias: str) -> dict[str, str]:
        # Byte fields travel as base64 strings, matching the remote API's decoder.
        return {
            "Alias": alias,
            "ServerCert": _b64(self.server_cert),
            "ServerKey": _b64(self.server_key),
            "CACert": _b64(self.ca_cert),
            "Cert": _b64(self.client_cert),
            "Key": _b64(self.client_key),
        }


@dataclass
class Instance:
    """One remotely allocated engine. Name and IP are assigned by the remote side."""

    name: str
    ip_address: str
    url: str = ""
    ssh_user: str | None = None
    created: bool = False

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "Instance":
        if not isinstance(payload, Mapping):
            raise ValueError("Instance payload must be a JSON object.")
        name = payload.get("Name")
        ip_address = payload.get("IP")
        if not isinstance(name, str) or not isinstance(ip_address, str):
            raise ValueError("Instance payload requires string fields Name and IP.")
        return cls(name=name, ip_address=ip_address)


@dataclass
class DriverRecord:
    """
    Everything one provisioning run knows about its instance.

    The name query counters back the driver-name downgrade and are scoped to
    this record only.
    """

    endpoint: RemoteEndpoint
    session_id: str
    machine_name: str
    store_path: str
    instance: Instance | None = None
    state: DriverState = DriverState.CONFIGURED
    name_queries: int = 0
    post_create_name_queries: int = 0
    compat_driver_name: bool = True
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def created(self) -> bool:
        return self.instance is not None and self.instance.created

    def to_dict(self) -> dict[str, Any]:
        instance = None
        if self.instance is not None:
            instance = {
                "name": self.instance.name,
                "ip_address": self.instance.ip_address,
                "url": self.instance.url,
                "ssh_user": self.instance.ssh_user,
                "created": self.instance.created,
            }
        return {
            "hostname": self.endpoint.hostname,
            "api_port": self.endpoint.api_port,
            "tls_port": self.endpoint.tls_port,
            "session_id": self.session_id,
            "machine_name": self.machine_name,
            "store_path": self.store_path,
            "state": self.state.value,
            "compat_driver_name": self.compat_driver_name,
            "instance": instance,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DriverRecord":
        required = {"hostname", "session_id", "machine_name", "store_path"}
        missing = [name for name in sorted(required) if name not in payload]
        if missing:
            raise ValueError(f"Driver record missing fields: {', '.join(missing)}")
        raw_instance = payload.get("instance")
        instance = None
        if raw_instance is not None:
            instance = Instance(
                name=str(raw_instance["name"]),
                ip_address=str(raw_instance["ip_address"]),
                url=str(raw_instance.get("url", "")),
                ssh_user=raw_instance.get("ssh_user"),
                created=bool(raw_instance.get("created", False)),
            )
        return cls(
            endpoint=RemoteEndpoint(
                hostname=str(payload["hostname"]),
                api_port=str(payload.get("api_port", "80")),
                tls_port=str(payload.get("tls_port", "443")),
            ),
            session_id=str(payload["session_id"]),
            machine_name=str(payload["machine_name"]),
            store_path=str(payload["store_path"]),
            instance=instance,
            state=DriverState(payload.get("state", DriverState.CONFIGURED.value)),
            compat_driver_name=bool(payload.get("compat_driver_name", True)),
            extra={str(k): str(v) for k, v in dict(payload.get("extra") or {}).items()},
        )
