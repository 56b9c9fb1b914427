from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO

from .exceptions import CertificateNotFoundError, StoreIOError
from .models import CertificateBundle, DriverRecord

_logger = logging.getLogger("pwd_driver.store")

CA_CERT = "ca.pem"
CA_KEY = "ca-key.pem"
CLIENT_CERT = "cert.pem"
CLIENT_KEY = "key.pem"
SERVER_CERT = "server.pem"
SERVER_KEY = "server-key.pem"
SSH_KEY = "id_rsa"
RECORD_FILE = "config.json"

PRIVATE_FILES = frozenset({CA_KEY, CLIENT_KEY, SERVER_KEY, SSH_KEY})
_CHUNK_SIZE = 64 * 1024


def default_store_path() -> Path:
    return Path.home() / ".docker" / "machine"


def is_default_store(path: str | Path) -> bool:
    return Path(path).expanduser().resolve() == default_store_path().resolve()


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


def _open_for_write(path: Path, *, private: bool) -> BinaryIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = 0o600 if private else 0o644
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    if private:
        # O_CREAT only applies the mode to new files.
        os.chmod(path, 0o600)
    return os.fdopen(fd, "wb")


class CertificateStore:
    """
    Local trust store for one machine.

    Shared CA and client material lives under ``<root>/certs``; material for a
    single instance lives under ``<root>/machines/<machine_name>``.
    """

    def __init__(self, root: str | Path, machine_name: str) -> None:
        if not machine_name:
            raise StoreIOError("Machine name is required to resolve the instance store.")
        self.root = Path(root).expanduser()
        self.machine_name = machine_name

    @property
    def certs_dir(self) -> Path:
        return self.root / "certs"

    @property
    def machine_dir(self) -> Path:
        return self.root / "machines" / self.machine_name

    def shared(self, name: str) -> Path:
        return self.certs_dir / name

    def resolve(self, name: str) -> Path:
        return self.machine_dir / name

    @property
    def ssh_key_path(self) -> Path:
        return self.resolve(SSH_KEY)

    def read(self, path: str | Path) -> bytes:
        source = Path(path)
        try:
            return source.read_bytes()
        except FileNotFoundError as exc:
            raise CertificateNotFoundError(f"File does not exist: {source}") from exc
        except OSError as exc:
            _logger.exception("Failed to read %s", source)
            raise StoreIOError(
                f"Error reading file {source}: {_format_exception(exc)}"
            ) from exc

    def write(self, path: str | Path, data: bytes, *, private: bool = False) -> None:
        self.write_file(path, data, private=private)

    @staticmethod
    def write_file(path: str | Path, data: bytes, *, private: bool = False) -> None:
        target = Path(path)
        private = private or target.name in PRIVATE_FILES
        try:
            with _open_for_write(target, private=private) as handle:
                handle.write(data)
        except OSError as exc:
            _logger.exception("Failed to write %s", target)
            raise StoreIOError(
                f"Error writing file {target}: {_format_exception(exc)}"
            ) from exc
        _logger.debug("Wrote %d bytes to %s private=%s", len(data), target, private)

    def copy(self, src: str | Path, dst: str | Path) -> None:
        source = Path(src)
        target = Path(dst)
        if not source.is_file():
            raise CertificateNotFoundError(f"File does not exist: {source}")
        private = target.name in PRIVATE_FILES or source.name in PRIVATE_FILES
        try:
            with source.open("rb") as reader, _open_for_write(
                target, private=private
            ) as writer:
                shutil.copyfileobj(reader, writer)
        except OSError as exc:
            _logger.exception("Failed to copy %s to %s", source, target)
            raise StoreIOError(
                f"Copying {source.name} to {target} failed: {_format_exception(exc)}"
            ) from exc
        _logger.debug("Copied %s to %s", source, target)

    def copy_shared_to_instance(self) -> None:
        for name in (CA_CERT, CLIENT_CERT, CLIENT_KEY):
            self.copy(self.shared(name), self.resolve(name))
        _logger.info("Copied shared CA and client material into %s", self.machine_dir)

    def fan_out(self, name: str, stream: BinaryIO) -> int:
        """
        Write one archive entry to the shared and instance stores at once.

        Returns the number of bytes written to each destination. Entries whose
        name reduces to "." or ".." are skipped.
        """

        entry = Path(name).name
        if not entry or entry in {".", ".."}:
            _logger.warning("Skipping archive entry with unsafe name %r", name)
            return 0
        private = entry in PRIVATE_FILES
        targets = (self.resolve(entry), self.shared(entry))
        written = 0
        try:
            with _open_for_write(targets[0], private=private) as instance_copy, _open_for_write(
                targets[1], private=private
            ) as shared_copy:
                while True:
                    chunk = stream.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    instance_copy.write(chunk)
                    shared_copy.write(chunk)
                    written += len(chunk)
        except OSError as exc:
            _logger.exception("Failed to fan out archive entry %s", entry)
            raise StoreIOError(
                f"Error copying certs for {entry}: {_format_exception(exc)}"
            ) from exc
        _logger.debug("Fanned out %s (%d bytes) to %s", entry, written, targets)
        return written

    def read_bundle(self) -> CertificateBundle:
        return CertificateBundle(
            server_cert=self.read(self.resolve(SERVER_CERT)),
            server_key=self.read(self.resolve(SERVER_KEY)),
            ca_cert=self.read(self.shared(CA_CERT)),
            client_cert=self.read(self.shared(CLIENT_CERT)),
            client_key=self.read(self.shared(CLIENT_KEY)),
        )

    def write_bundle(self, bundle: CertificateBundle) -> None:
        self.write(self.resolve(SERVER_CERT), bundle.server_cert)
        self.write(self.resolve(SERVER_KEY), bundle.server_key, private=True)
        self.write(self.shared(CA_CERT), bundle.ca_cert)
        self.write(self.shared(CLIENT_CERT), bundle.client_cert)
        self.write(self.shared(CLIENT_KEY), bundle.client_key, private=True)

    def save_record(self, record: DriverRecord) -> Path:
        target = self.resolve(RECORD_FILE)
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)
        self.write(target, payload.encode("utf-8"), private=True)
        return target

    def load_record(self) -> DriverRecord:
        raw = self.read(self.resolve(RECORD_FILE))
        try:
            loaded = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreIOError(
                f"Driver record is not valid JSON: {self.resolve(RECORD_FILE)}"
            ) from exc
        if not isinstance(loaded, dict):
            raise StoreIOError("Driver record must be a JSON object.")
        try:
            return DriverRecord.from_dict(loaded)
        except (KeyError, ValueError) as exc:
            raise StoreIOError(f"Driver record is incomplete: {exc}") from exc
