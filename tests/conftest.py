from __future__ import annotations

import logging
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pwd_driver import CertificateStore, DriverConfig, bootstrap_certificates

SESSION_ID = "sess1234abcd5678"
HOSTNAME = "play.example"
MACHINE_NAME = "node1"

_ENV_VARS = (
    "PWD_SESSION_ID",
    "PWD_URL",
    "PWD_HOSTNAME",
    "PWD_SSL_PORT",
    "PWD_PORT",
    "PWD_IDENTITY_STRATEGY",
    "PWD_HOST_ENCODING",
    "MACHINE_NAME",
    "MACHINE_STORAGE_PATH",
    "PWD_DRIVER_LOG_STDERR",
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PWD_DRIVER_LOG_FILE", str(tmp_path / "logs" / "pwd-driver.log"))
    yield
    logger = logging.getLogger("pwd_driver")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(scope="session")
def shared_certs(tmp_path_factory: pytest.TempPathFactory) -> Path:
    root = tmp_path_factory.mktemp("template-store")
    bootstrap_certificates(CertificateStore(root, "template"), "tester.template")
    return root / "certs"


@pytest.fixture
def store_root(tmp_path: Path, shared_certs: Path) -> Path:
    root = tmp_path / "machine-store"
    shutil.copytree(shared_certs, root / "certs")
    return root


@pytest.fixture
def store(store_root: Path) -> CertificateStore:
    return CertificateStore(store_root, MACHINE_NAME)


@pytest.fixture
def make_config(store_root: Path):
    def _make(**overrides) -> DriverConfig:
        values = {
            "session_id": SESSION_ID,
            "machine_name": MACHINE_NAME,
            "store_path": str(store_root),
            "hostname": HOSTNAME,
        }
        values.update(overrides)
        return DriverConfig(**values)

    return _make


def make_response(
    status_code: int = 200,
    payload: object | None = None,
    content: bytes = b"",
) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.content = content
    response.url = "http://test"
    return response
