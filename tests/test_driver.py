from __future__ import annotations

import base64
import io
import stat
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import HOSTNAME, MACHINE_NAME, SESSION_ID, make_response
from pwd_driver import (
    DRIVER_NAME,
    SENTINEL_DRIVER_NAME,
    AliasHostEncoding,
    CertificateStore,
    ConfigurationError,
    DriverState,
    EmbeddedIdentityStrategy,
    IpHostEncoding,
    MachineState,
    PwdDriver,
    StoreIOError,
    TransportError,
    UnsupportedOperationError,
    select_strategy,
)
from pwd_driver.x509_ops import load_certificate, subject_alt_names

BASE = f"http://{HOSTNAME}:80"
INSTANCES = f"{BASE}/sessions/{SESSION_ID}/instances"


def _created_driver(make_config, mock_request, **overrides) -> PwdDriver:
    mock_request.return_value = make_response(payload={"Name": "abc123", "IP": "10.0.0.5"})
    driver = PwdDriver()
    driver.configure(make_config(**overrides))
    driver.create()
    mock_request.reset_mock()
    return driver


@patch("requests.Session.request")
def test_create_embedded_identity(mock_request, make_config, store: CertificateStore) -> None:
    mock_request.return_value = make_response(payload={"Name": "abc123", "IP": "10.0.0.5"})
    driver = PwdDriver()
    driver.configure(make_config())

    instance = driver.create()

    assert driver.state is DriverState.CREATED
    assert driver.get_state() is MachineState.RUNNING
    assert instance.created is True
    assert driver.get_ip() == "10.0.0.5"

    alias = driver.record.extra["alias"]
    host = f"pwd{alias}-{SESSION_ID[:8]}-2375.{HOSTNAME}"
    assert driver.get_url() == f"tcp://{host}:443"
    assert driver.get_ssh_username() == f"10-0-0-5-{SESSION_ID[:8]}"

    mock_request.assert_called_once()
    assert mock_request.call_args[0] == ("POST", INSTANCES)
    body = mock_request.call_args[1]["json"]
    assert body["Alias"] == alias
    server_cert = base64.b64decode(body["ServerCert"])
    assert server_cert == store.read(store.resolve("server.pem"))
    assert base64.b64decode(body["CACert"]) == store.read(store.shared("ca.pem"))
    assert subject_alt_names(load_certificate(server_cert)) == [host, "localhost"]

    assert stat.S_IMODE(store.ssh_key_path.stat().st_mode) == 0o600
    assert store.load_record().state is DriverState.CREATED


@patch("requests.Session.request")
def test_create_requires_session_id_without_network(mock_request, make_config) -> None:
    driver = PwdDriver()
    driver.configure(make_config(session_id=""))

    with pytest.raises(ConfigurationError, match="Session Id"):
        driver.create()

    mock_request.assert_not_called()
    assert driver.state is DriverState.CONFIGURED


@patch("requests.Session.request")
def test_create_refuses_default_store_path(
    mock_request, make_config, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    driver = PwdDriver()
    driver.configure(make_config(store_path=str(tmp_path / ".docker" / "machine")))

    with pytest.raises(ConfigurationError, match="Default storage path"):
        driver.create()

    mock_request.assert_not_called()


def test_create_requires_configuration() -> None:
    with pytest.raises(ConfigurationError):
        PwdDriver().create()


@patch("requests.Session.request")
def test_create_transport_failure_keeps_configured(mock_request, make_config) -> None:
    mock_request.return_value = make_response(status_code=500)
    driver = PwdDriver()
    driver.configure(make_config())

    with pytest.raises(TransportError):
        driver.create()

    assert driver.state is DriverState.CONFIGURED
    assert driver.get_state() is MachineState.NONE
    assert driver.get_url() == ""


@patch("requests.Session.request")
def test_create_twice_is_rejected(mock_request, make_config) -> None:
    driver = _created_driver(make_config, mock_request)
    with pytest.raises(ConfigurationError):
        driver.create()
    mock_request.assert_not_called()


@patch("requests.Session.request")
def test_remove_issues_single_delete(mock_request, make_config, store: CertificateStore) -> None:
    driver = _created_driver(make_config, mock_request)
    mock_request.return_value = make_response()

    driver.remove()

    mock_request.assert_called_once()
    assert mock_request.call_args[0] == ("DELETE", f"{INSTANCES}/abc123")
    assert driver.state is DriverState.REMOVED
    assert store.load_record().state is DriverState.REMOVED


@patch("requests.Session.request")
def test_remove_failure_leaves_state_unchanged(mock_request, make_config) -> None:
    driver = _created_driver(make_config, mock_request)
    mock_request.return_value = make_response(status_code=404)

    with pytest.raises(TransportError) as excinfo:
        driver.remove()

    assert excinfo.value.status_code == 404
    assert mock_request.call_count == 1
    assert driver.state is DriverState.CREATED
    assert driver.get_state() is MachineState.RUNNING

    mock_request.return_value = make_response()
    driver.remove()
    assert driver.state is DriverState.REMOVED


def test_remove_requires_created_instance(make_config) -> None:
    driver = PwdDriver()
    driver.configure(make_config())
    with pytest.raises(ConfigurationError):
        driver.remove()


@patch("requests.Session.request")
def test_driver_name_downgrade_sequence(mock_request, make_config) -> None:
    mock_request.return_value = make_response(payload={"Name": "abc123", "IP": "10.0.0.5"})
    driver = PwdDriver()
    driver.configure(make_config())

    q1 = driver.driver_name()
    driver.create()
    answers = [q1] + [driver.driver_name() for _ in range(3)]

    assert answers == [DRIVER_NAME, DRIVER_NAME, SENTINEL_DRIVER_NAME, SENTINEL_DRIVER_NAME]
    assert driver.record.name_queries == 4
    assert driver.record.post_create_name_queries == 3


@patch("requests.Session.request")
def test_driver_name_counters_are_per_record(mock_request, make_config, store_root: Path) -> None:
    first = _created_driver(make_config, mock_request)
    assert [first.driver_name(), first.driver_name()] == [DRIVER_NAME, SENTINEL_DRIVER_NAME]

    second = _created_driver(make_config, mock_request, machine_name="node2")
    assert [second.driver_name(), second.driver_name()] == [DRIVER_NAME, SENTINEL_DRIVER_NAME]


@patch("requests.Session.request")
def test_driver_name_without_compat_flag(mock_request, make_config) -> None:
    driver = _created_driver(make_config, mock_request, compat_driver_name=False)

    assert {driver.driver_name() for _ in range(4)} == {DRIVER_NAME}
    assert driver.remote_provisioning_disabled is True


@pytest.mark.parametrize(
    "operation",
    ["start", "stop", "restart", "kill", "get_ssh_hostname", "get_ssh_port"],
)
@patch("requests.Session.request")
def test_unsupported_operations(mock_request, operation: str, make_config) -> None:
    fresh = PwdDriver()
    with pytest.raises(UnsupportedOperationError, match="Not implemented"):
        getattr(fresh, operation)()

    created = _created_driver(make_config, mock_request)
    with pytest.raises(UnsupportedOperationError):
        getattr(created, operation)()


def _archive(names: tuple[str, ...]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name in names:
            content = f"pem for {name}".encode()
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@patch("requests.Session.request")
def test_create_with_archive_strategy(mock_request, make_config, store: CertificateStore) -> None:
    names = ("ca.pem", "cert.pem", "key.pem", "server.pem", "server-key.pem")
    responses = {
        ("GET", f"{BASE}/keys"): make_response(content=_archive(names)),
        ("POST", INSTANCES): make_response(payload={"Name": "abc123", "IP": "10.0.0.5"}),
    }
    mock_request.side_effect = lambda method, url, **kwargs: responses[(method, url)]
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="archive"))

    driver.create()

    assert driver.get_url() == f"tcp://ip10_0_0_5-2375.{HOSTNAME}:443"
    for name in names:
        expected = f"pem for {name}".encode()
        assert store.read(store.resolve(name)) == expected
        assert store.read(store.shared(name)) == expected
    assert [call[0][0] for call in mock_request.call_args_list] == ["GET", "POST"]


@patch("requests.Session.request")
def test_archive_strategy_requires_complete_bundle(mock_request, make_config) -> None:
    mock_request.return_value = make_response(content=_archive(("server.pem",)))
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="archive"))

    with pytest.raises(StoreIOError, match="ca.pem"):
        driver.create()

    assert mock_request.call_count == 1
    assert driver.state is DriverState.CONFIGURED


@patch("requests.Session.request")
def test_create_with_push_strategy(mock_request, make_config, store: CertificateStore) -> None:
    responses = {
        ("POST", INSTANCES): make_response(payload={"Name": "abc123", "IP": "10.0.0.5"}),
        ("POST", f"{INSTANCES}/abc123/keys"): make_response(),
    }
    mock_request.side_effect = lambda method, url, **kwargs: responses[(method, url)]
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="push", tls_port="8443"))

    driver.create()

    host = f"ip10_0_0_5-2375.{HOSTNAME}"
    assert driver.get_url() == f"tcp://{host}:8443"
    push_body = mock_request.call_args_list[1][1]["json"]
    server_cert = base64.b64decode(push_body["server_cert"])
    assert subject_alt_names(load_certificate(server_cert)) == ["10.0.0.5", host, "localhost"]
    assert base64.b64decode(push_body["server_key"]) == store.read(store.resolve("server-key.pem"))


@patch("requests.Session.request")
def test_push_strategy_failure_leaves_driver_configured(mock_request, make_config) -> None:
    responses = {
        ("POST", INSTANCES): make_response(payload={"Name": "abc123", "IP": "10.0.0.5"}),
        ("POST", f"{INSTANCES}/abc123/keys"): make_response(status_code=500),
    }
    mock_request.side_effect = lambda method, url, **kwargs: responses[(method, url)]
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="push"))

    with pytest.raises(TransportError):
        driver.create()

    assert driver.state is DriverState.CONFIGURED
    assert driver.instance is None


def test_embedded_strategy_needs_pre_allocation_host() -> None:
    with pytest.raises(ConfigurationError):
        EmbeddedIdentityStrategy(IpHostEncoding())


def test_unknown_strategy_is_configuration_error(make_config) -> None:
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="carrier-pigeon"))
    with pytest.raises(ConfigurationError):
        driver.create()


@patch("requests.Session.request")
def test_driver_restored_from_record(mock_request, make_config, store_root: Path) -> None:
    created = _created_driver(make_config, mock_request)
    restored = PwdDriver.from_record(
        CertificateStore(store_root, MACHINE_NAME).load_record()
    )

    assert restored.get_url() == created.get_url()
    assert restored.get_ip() == "10.0.0.5"
    assert restored.get_state() is MachineState.RUNNING

    mock_request.return_value = make_response()
    restored.remove()
    assert mock_request.call_args[0] == ("DELETE", f"{INSTANCES}/abc123")


@pytest.mark.parametrize("strategy", ["archive", "push"])
@patch("requests.Session.request")
def test_alias_encoding_needs_a_strategy_that_sends_it(
    mock_request, strategy: str, make_config
) -> None:
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy=strategy, host_encoding="alias"))

    with pytest.raises(ConfigurationError, match="alias"):
        driver.create()

    mock_request.assert_not_called()
    assert driver.state is DriverState.CONFIGURED


@pytest.mark.parametrize("strategy", ["archive", "push"])
def test_select_strategy_rejects_unsent_alias(strategy: str) -> None:
    with pytest.raises(ConfigurationError):
        select_strategy(strategy, "alias")


@pytest.mark.parametrize(
    ("strategy", "encoding", "encoding_type"),
    [
        ("embedded", None, AliasHostEncoding),
        ("embedded", "alias", AliasHostEncoding),
        ("archive", None, IpHostEncoding),
        ("push", "ip", IpHostEncoding),
        ("push", " IP ", IpHostEncoding),
    ],
)
def test_select_strategy_with_host_encoding(
    strategy: str, encoding: str | None, encoding_type: type
) -> None:
    selected = select_strategy(strategy, encoding)
    assert selected.name == strategy
    assert isinstance(selected.host_encoding, encoding_type)


def test_unknown_host_encoding_is_configuration_error(make_config) -> None:
    with pytest.raises(ConfigurationError, match="host encoding"):
        select_strategy("push", "carrier-pigeon")

    driver = PwdDriver()
    driver.configure(make_config(host_encoding="carrier-pigeon"))
    with pytest.raises(ConfigurationError, match="carrier-pigeon"):
        driver.create()


@patch("requests.Session.request")
def test_embedded_with_explicit_alias_encoding(mock_request, make_config) -> None:
    mock_request.return_value = make_response(payload={"Name": "abc123", "IP": "10.0.0.5"})
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="embedded", host_encoding="alias"))

    driver.create()

    alias = driver.record.extra["alias"]
    assert mock_request.call_args[1]["json"]["Alias"] == alias
    assert driver.get_url() == f"tcp://pwd{alias}-{SESSION_ID[:8]}-2375.{HOSTNAME}:443"


@patch("requests.Session.request")
def test_push_with_explicit_ip_encoding(mock_request, make_config) -> None:
    responses = {
        ("POST", INSTANCES): make_response(payload={"Name": "abc123", "IP": "10.0.0.5"}),
        ("POST", f"{INSTANCES}/abc123/keys"): make_response(),
    }
    mock_request.side_effect = lambda method, url, **kwargs: responses[(method, url)]
    driver = PwdDriver()
    driver.configure(make_config(identity_strategy="push", host_encoding="ip"))

    driver.create()

    assert driver.get_url() == f"tcp://ip10_0_0_5-2375.{HOSTNAME}:443"
    assert driver.record.extra == {}


@patch("requests.Session.request")
def test_name_downgrade_setting_survives_reload(
    mock_request, make_config, store_root: Path
) -> None:
    _created_driver(make_config, mock_request, compat_driver_name=False)
    record = CertificateStore(store_root, MACHINE_NAME).load_record()
    assert record.compat_driver_name is False

    restored = PwdDriver.from_record(record)
    assert {restored.driver_name() for _ in range(3)} == {DRIVER_NAME}


@patch("requests.Session.request")
def test_reloaded_record_keeps_name_downgrade_by_default(
    mock_request, make_config, store_root: Path
) -> None:
    _created_driver(make_config, mock_request)
    restored = PwdDriver.from_record(CertificateStore(store_root, MACHINE_NAME).load_record())

    assert [restored.driver_name() for _ in range(3)] == [
        DRIVER_NAME,
        SENTINEL_DRIVER_NAME,
        SENTINEL_DRIVER_NAME,
    ]
