from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from asn1crypto import keys, x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .exceptions import GenerationError, StoreIOError
from .store import CA_CERT, CA_KEY, CLIENT_CERT, CLIENT_KEY, CertificateStore
from .x509_ops import (
    MAX_COMMON_NAME_LENGTH,
    DistinguishedName,
    build_ca_extensions,
    build_leaf_extensions,
    create_certificate,
    dump_certificate_pem,
    load_certificate,
    load_public_key_info,
    normalize_hosts,
)

_logger = logging.getLogger("pwd_driver.keygen")

DEFAULT_KEY_BITS = 2048
SIGNING_ALGORITHM = "rsa_pkcs1v15_sha256"


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


@dataclass(frozen=True)
class ServerKeyPair:
    """PEM server certificate and its private key."""

    cert_pem: bytes
    key_pem: bytes


def default_org(machine_name: str) -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "pwd"
    return f"{user}.{machine_name}"


def _common_name(value: str) -> str | None:
    # Longer names stay in the SAN only, subject carries just O.
    return value if len(value) <= MAX_COMMON_NAME_LENGTH else None


def _new_rsa_key(bits: int) -> rsa.RSAPrivateKey:
    if bits < 2048:
        raise GenerationError("RSA key size must be at least 2048 bits.")
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=bits)
    except Exception as exc:
        _logger.exception("RSA key generation failed bits=%d", bits)
        raise GenerationError(
            f"Failed to generate RSA key: {_format_exception(exc)}"
        ) from exc


def _private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    # PKCS#1 "RSA PRIVATE KEY" block, the format the remote engine expects.
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _public_key_info(key: rsa.RSAPrivateKey) -> keys.PublicKeyInfo:
    return load_public_key_info(
        key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )


def _signer(key: rsa.RSAPrivateKey) -> Callable[[bytes], bytes]:
    return lambda payload: key.sign(payload, padding.PKCS1v15(), hashes.SHA256())


def _load_ca(
    ca_cert_pem: bytes, ca_key_pem: bytes
) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    try:
        issuer = load_certificate(ca_cert_pem)
        ca_key = serialization.load_pem_private_key(ca_key_pem, password=None)
    except (TypeError, ValueError) as exc:
        raise GenerationError(f"Unable to load CA material: {_format_exception(exc)}") from exc
    if not isinstance(ca_key, rsa.RSAPrivateKey):
        raise GenerationError("CA key must be an RSA private key.")
    return issuer, ca_key


def issue_server_certificate(
    hosts: Iterable[str],
    org: str,
    ca_cert_pem: bytes,
    ca_key_pem: bytes,
    *,
    bits: int = DEFAULT_KEY_BITS,
    validity_days: int = 1095,
) -> ServerKeyPair:
    """
    Issue a server certificate for ``hosts`` signed by the given CA.

    The SAN set is the supplied hosts plus ``localhost``. IP literals are
    encoded as IP SANs, everything else as DNS names.
    """

    try:
        resolved_hosts = normalize_hosts(hosts)
    except ValueError as exc:
        raise GenerationError(str(exc)) from exc

    issuer, ca_key = _load_ca(ca_cert_pem, ca_key_pem)
    server_key = _new_rsa_key(bits)
    subject_public_key_info = _public_key_info(server_key)
    try:
        certificate = create_certificate(
            subject=DistinguishedName(
                common_name=_common_name(resolved_hosts[0]), organization=org
            ).to_asn1(),
            issuer=issuer.subject,
            subject_public_key_info=subject_public_key_info,
            extensions=build_leaf_extensions(
                subject_public_key_info=subject_public_key_info,
                issuer_public_key_info=issuer.public_key,
                usage="server",
                hosts=resolved_hosts,
            ),
            sign_tbs=_signer(ca_key),
            signing_algorithm=SIGNING_ALGORITHM,
            validity_days=validity_days,
        )
    except Exception as exc:
        _logger.exception("Server certificate signing failed hosts=%s", resolved_hosts)
        raise GenerationError(
            f"error generating server cert: {_format_exception(exc)}"
        ) from exc

    _logger.info("Issued server certificate org=%s hosts=%s", org, resolved_hosts)
    return ServerKeyPair(
        cert_pem=dump_certificate_pem(certificate),
        key_pem=_private_key_pem(server_key),
    )


def generate_server_certificate(
    hosts: Iterable[str],
    org: str,
    ca_cert_path: str | Path,
    ca_key_path: str | Path,
    *,
    store: CertificateStore,
    bits: int = DEFAULT_KEY_BITS,
) -> ServerKeyPair:
    """Issue a server certificate using CA material read from local paths."""

    try:
        ca_cert_pem = store.read(ca_cert_path)
        ca_key_pem = store.read(ca_key_path)
    except StoreIOError as exc:
        raise GenerationError(f"CA material unavailable: {exc}") from exc
    return issue_server_certificate(hosts, org, ca_cert_pem, ca_key_pem, bits=bits)


def generate_server_certificate_files(
    hosts: Iterable[str],
    org: str,
    ca_cert_path: str | Path,
    ca_key_path: str | Path,
    *,
    cert_file: str | Path,
    key_file: str | Path,
    store: CertificateStore,
    bits: int = DEFAULT_KEY_BITS,
) -> ServerKeyPair:
    pair = generate_server_certificate(
        hosts, org, ca_cert_path, ca_key_path, store=store, bits=bits
    )
    store.write(cert_file, pair.cert_pem)
    store.write(key_file, pair.key_pem, private=True)
    return pair


def generate_private_key(path: str | Path, *, bits: int = DEFAULT_KEY_BITS) -> None:
    """Write a fresh PKCS#1 RSA private key to ``path`` with mode 0600."""

    key = _new_rsa_key(bits)
    target = Path(path)
    try:
        CertificateStore.write_file(target, _private_key_pem(key), private=True)
    except StoreIOError as exc:
        raise GenerationError(f"Could not create private key {target}: {exc}") from exc
    _logger.info("Generated %d-bit private key at %s", bits, target)


def bootstrap_certificates(
    store: CertificateStore,
    org: str,
    *,
    bits: int = DEFAULT_KEY_BITS,
    validity_days: int = 1095,
) -> bool:
    """
    Create the shared CA and client certificate when they are missing.

    Returns True when new material was written.
    """

    ca_cert_path = store.shared(CA_CERT)
    ca_key_path = store.shared(CA_KEY)
    client_cert_path = store.shared(CLIENT_CERT)
    client_key_path = store.shared(CLIENT_KEY)
    if all(
        path.is_file()
        for path in (ca_cert_path, ca_key_path, client_cert_path, client_key_path)
    ):
        _logger.debug("Shared certificates already present in %s", store.certs_dir)
        return False

    if ca_cert_path.is_file() and ca_key_path.is_file():
        issuer, ca_key = _load_ca(store.read(ca_cert_path), store.read(ca_key_path))
    else:
        ca_key = _new_rsa_key(bits)
        ca_public_key_info = _public_key_info(ca_key)
        ca_subject = DistinguishedName(common_name=_common_name(org), organization=org).to_asn1()
        try:
            issuer = create_certificate(
                subject=ca_subject,
                issuer=ca_subject,
                subject_public_key_info=ca_public_key_info,
                extensions=build_ca_extensions(subject_public_key_info=ca_public_key_info),
                sign_tbs=_signer(ca_key),
                signing_algorithm=SIGNING_ALGORITHM,
                validity_days=validity_days,
            )
        except Exception as exc:
            _logger.exception("CA certificate generation failed org=%s", org)
            raise GenerationError(
                f"Error generating CA certificate: {_format_exception(exc)}"
            ) from exc
        store.write(ca_cert_path, dump_certificate_pem(issuer))
        store.write(ca_key_path, _private_key_pem(ca_key), private=True)
        _logger.info("Created certificate authority in %s", store.certs_dir)

    client_key = _new_rsa_key(bits)
    client_public_key_info = _public_key_info(client_key)
    try:
        client_cert = create_certificate(
            subject=DistinguishedName(common_name=_common_name(org), organization=org).to_asn1(),
            issuer=issuer.subject,
            subject_public_key_info=client_public_key_info,
            extensions=build_leaf_extensions(
                subject_public_key_info=client_public_key_info,
                issuer_public_key_info=issuer.public_key,
                usage="client",
            ),
            sign_tbs=_signer(ca_key),
            signing_algorithm=SIGNING_ALGORITHM,
            validity_days=validity_days,
        )
    except Exception as exc:
        _logger.exception("Client certificate generation failed org=%s", org)
        raise GenerationError(
            f"Error generating client certificate: {_format_exception(exc)}"
        ) from exc
    store.write(client_cert_path, dump_certificate_pem(client_cert))
    store.write(client_key_path, _private_key_pem(client_key), private=True)
    _logger.info("Created client certificate in %s", store.certs_dir)
    return True
