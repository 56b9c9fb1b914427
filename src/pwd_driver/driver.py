from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from .config import CREATE_FLAGS, DriverConfig, Flag
from .exceptions import ConfigurationError, TransportError, UnsupportedOperationError
from .identity import IdentityStrategy, ProvisioningContext, select_strategy
from .keygen import default_org
from .models import DriverRecord, DriverState, Instance, MachineState, RemoteEndpoint
from .store import CertificateStore, is_default_store
from .transport import SessionTransportClient

_logger = logging.getLogger("pwd_driver.driver")

DRIVER_NAME = "pwd"
# Reported once the instance exists so the host tool skips SSH provisioning.
SENTINEL_DRIVER_NAME = "none"

TransportFactory = Callable[[RemoteEndpoint], SessionTransportClient]


class PwdDriver:
    """
    Lifecycle of one remotely hosted engine: configured, created, removed.

    The remote session system owns the engine process, so start/stop/restart/
    kill are unsupported and get_state() reports running once created.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory = SessionTransportClient,
        strategy: IdentityStrategy | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._strategy = strategy
        self._record: DriverRecord | None = None
        self._config: DriverConfig | None = None

    @classmethod
    def from_record(
        cls,
        record: DriverRecord,
        *,
        transport_factory: TransportFactory = SessionTransportClient,
    ) -> "PwdDriver":
        driver = cls(transport_factory=transport_factory)
        driver._record = record
        return driver

    @property
    def state(self) -> DriverState:
        if self._record is None:
            return DriverState.UNCONFIGURED
        return self._record.state

    @property
    def record(self) -> DriverRecord:
        if self._record is None:
            raise ConfigurationError("Driver is not configured.")
        return self._record

    @property
    def instance(self) -> Instance | None:
        return None if self._record is None else self._record.instance

    @property
    def store(self) -> CertificateStore:
        return CertificateStore(self.record.store_path, self.record.machine_name)

    @property
    def remote_provisioning_disabled(self) -> bool:
        return True

    @staticmethod
    def get_create_flags() -> tuple[Flag, ...]:
        return CREATE_FLAGS

    def configure(self, config: DriverConfig) -> None:
        if self.state not in {DriverState.UNCONFIGURED, DriverState.CONFIGURED}:
            raise ConfigurationError(
                f"Cannot reconfigure a driver in state '{self.state.value}'."
            )
        self._config = config
        self._record = DriverRecord(
            endpoint=RemoteEndpoint(
                hostname=config.hostname,
                api_port=config.api_port,
                tls_port=config.tls_port,
            ),
            session_id=config.session_id,
            machine_name=config.machine_name,
            store_path=config.store_path,
            state=DriverState.CONFIGURED,
            compat_driver_name=config.compat_driver_name,
        )
        _logger.debug(
            "Configured driver machine=%s hostname=%s api_port=%s tls_port=%s strategy=%s",
            config.machine_name,
            config.hostname,
            config.api_port,
            config.tls_port,
            config.identity_strategy,
        )

    def set_config_from_flags(
        self,
        options: Mapping[str, Any],
        *,
        machine_name: str | None = None,
        store_path: str | None = None,
    ) -> None:
        _logger.debug("Driver options: %r", dict(options))
        self.configure(
            DriverConfig.from_options(
                options, machine_name=machine_name, store_path=store_path
            )
        )

    def pre_create_check(self) -> None:
        record = self.record
        if is_default_store(record.store_path):
            raise ConfigurationError(
                "Default storage path is discouraged when using PWD driver. "
                "Use -s flag or MACHINE_STORAGE_PATH env variable to set one"
            )
        if not record.session_id:
            raise ConfigurationError("Session Id must be specified")

    def _resolve_strategy(self) -> IdentityStrategy:
        if self._strategy is not None:
            return self._strategy
        if self._config is None:
            raise ConfigurationError("No identity strategy configured.")
        return select_strategy(self._config.identity_strategy, self._config.host_encoding)

    def create(self) -> Instance:
        if self.state is not DriverState.CONFIGURED:
            raise ConfigurationError(
                f"create() requires a configured driver, state is '{self.state.value}'."
            )
        self.pre_create_check()
        record = self.record
        strategy = self._resolve_strategy()
        store = self.store

        _logger.info(
            "Creating instance machine=%s session=%s strategy=%s",
            record.machine_name,
            record.session_id,
            strategy.name,
        )
        with self._transport_factory(record.endpoint) as transport:
            instance = strategy.provision(
                ProvisioningContext(
                    record=record,
                    transport=transport,
                    store=store,
                    org=default_org(record.machine_name),
                )
            )

        instance.created = True
        record.instance = instance
        record.state = DriverState.CREATED
        store.save_record(record)
        _logger.info(
            "Instance created name=%s ip=%s url=%s",
            instance.name,
            instance.ip_address,
            instance.url,
        )
        return instance

    def remove(self) -> None:
        if self.state is not DriverState.CREATED or self.instance is None:
            raise ConfigurationError(
                f"remove() requires a created instance, state is '{self.state.value}'."
            )
        record = self.record
        try:
            with self._transport_factory(record.endpoint) as transport:
                transport.delete_instance(record.session_id, self.instance.name)
        except TransportError:
            _logger.error("Error removing instance name=%s", self.instance.name)
            raise
        record.state = DriverState.REMOVED
        self.store.save_record(record)
        _logger.info("Instance removed name=%s", self.instance.name)

    def driver_name(self) -> str:
        """
        Report the driver type to the host tool.

        The first post-creation query still answers with the real name; every
        later one answers with the sentinel so the host tool stops driving
        SSH provisioning.
        """

        record = self._record
        if record is None or not record.compat_driver_name:
            return DRIVER_NAME
        try:
            if record.created and record.post_create_name_queries >= 1:
                return SENTINEL_DRIVER_NAME
            return DRIVER_NAME
        finally:
            record.name_queries += 1
            if record.created:
                record.post_create_name_queries += 1

    def get_machine_name(self) -> str:
        return self.record.machine_name

    def get_ip(self) -> str:
        return "" if self.instance is None else self.instance.ip_address

    def get_url(self) -> str:
        return "" if self.instance is None else self.instance.url

    def get_state(self) -> MachineState:
        if self.state is DriverState.CREATED:
            return MachineState.RUNNING
        return MachineState.NONE

    def get_ssh_username(self) -> str:
        if self.instance is None or not self.instance.ssh_user:
            return "unsupported"
        return self.instance.ssh_user

    def get_ssh_hostname(self) -> str:
        raise UnsupportedOperationError()

    def get_ssh_port(self) -> int:
        raise UnsupportedOperationError()

    def start(self) -> None:
        raise UnsupportedOperationError()

    def stop(self) -> None:
        raise UnsupportedOperationError()

    def restart(self) -> None:
        raise UnsupportedOperationError()

    def kill(self) -> None:
        raise UnsupportedOperationError()
