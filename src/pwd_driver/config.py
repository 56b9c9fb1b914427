from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlparse

from .exceptions import ConfigurationError
from .store import default_store_path

DEFAULT_HOSTNAME = "play-with-docker.com"
DEFAULT_TLS_PORT = "443"
DEFAULT_API_PORT = "80"
DEFAULT_IDENTITY_STRATEGY = "embedded"


@dataclass(frozen=True)
class Flag:
    """A create-time option the host tool exposes for this driver."""

    name: str
    usage: str
    env_var: str
    default: str = ""


CREATE_FLAGS: tuple[Flag, ...] = (
    Flag("pwd-session-id", "PWD session id to create the instance", "PWD_SESSION_ID"),
    Flag("pwd-url", "PWD session URL, overrides hostname and session id", "PWD_URL"),
    Flag(
        "pwd-hostname",
        "PWD hostname create machines from",
        "PWD_HOSTNAME",
        DEFAULT_HOSTNAME,
    ),
    Flag(
        "pwd-ssl-port",
        "pwd ssl port to connect to the daemon",
        "PWD_SSL_PORT",
        DEFAULT_TLS_PORT,
    ),
    Flag("pwd-port", "pwd port to connect to the API", "PWD_PORT", DEFAULT_API_PORT),
    Flag(
        "pwd-identity-strategy",
        "How the TLS identity reaches the instance: archive, embedded or push",
        "PWD_IDENTITY_STRATEGY",
        DEFAULT_IDENTITY_STRATEGY,
    ),
    Flag(
        "pwd-host-encoding",
        "Engine hostname form: ip or alias (default depends on strategy)",
        "PWD_HOST_ENCODING",
    ),
)


def _validate_port(value: str, name: str) -> str:
    try:
        port = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {value}") from exc
    if not 0 < port < 65536:
        raise ConfigurationError(f"{name} must be between 1 and 65535, got: {value}")
    return str(port)


def parse_session_url(url: str) -> tuple[str, str]:
    """Split ``https://<host>/p/<session>`` into ``(hostname, session_id)``."""

    parsed = urlparse(url)
    session_id = parsed.path
    if session_id.startswith("/p/"):
        session_id = session_id[len("/p/"):]
    session_id = session_id.strip("/")
    if not parsed.netloc or not session_id:
        raise ConfigurationError("Incorrect PWD URL")
    return parsed.netloc, session_id


@dataclass(frozen=True)
class DriverConfig:
    """Runtime configuration for one PWD machine."""

    session_id: str
    machine_name: str
    store_path: str
    hostname: str = DEFAULT_HOSTNAME
    tls_port: str = DEFAULT_TLS_PORT
    api_port: str = DEFAULT_API_PORT
    identity_strategy: str = DEFAULT_IDENTITY_STRATEGY
    host_encoding: str | None = None
    compat_driver_name: bool = True

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any],
        *,
        machine_name: str | None = None,
        store_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "DriverConfig":
        """
        Build a config from host-tool flag values.

        Each flag falls back to its environment variable, then its default.
        """

        env = os.environ if environ is None else environ

        def value(flag: Flag) -> str:
            raw = options.get(flag.name)
            if raw is None or raw == "":
                raw = env.get(flag.env_var, flag.default)
            return str(raw).strip()

        flags = {flag.name: flag for flag in CREATE_FLAGS}
        session_id = value(flags["pwd-session-id"])
        hostname = value(flags["pwd-hostname"]) or DEFAULT_HOSTNAME
        session_url = value(flags["pwd-url"])
        if session_url:
            hostname, session_id = parse_session_url(session_url)

        resolved_machine = machine_name or env.get("MACHINE_NAME", "")
        if not resolved_machine:
            raise ConfigurationError("MACHINE_NAME is required.")
        resolved_store = store_path or env.get("MACHINE_STORAGE_PATH") or str(
            default_store_path()
        )

        host_encoding = value(flags["pwd-host-encoding"]) or None
        return cls(
            session_id=session_id,
            machine_name=resolved_machine,
            store_path=resolved_store,
            hostname=hostname,
            tls_port=_validate_port(
                value(flags["pwd-ssl-port"]) or DEFAULT_TLS_PORT, "pwd-ssl-port"
            ),
            api_port=_validate_port(value(flags["pwd-port"]) or DEFAULT_API_PORT, "pwd-port"),
            identity_strategy=value(flags["pwd-identity-strategy"])
            or DEFAULT_IDENTITY_STRATEGY,
            host_encoding=host_encoding,
        )

    @classmethod
    def from_env(cls) -> "DriverConfig":
        return cls.from_options({})
