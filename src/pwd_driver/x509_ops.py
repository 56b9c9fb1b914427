from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from asn1crypto import algos, keys, pem, x509

# ub-common-name from RFC 5280.
MAX_COMMON_NAME_LENGTH = 64


@dataclass(frozen=True)
class DistinguishedName:
    """
    Distinguished Name values used for driver-issued certificates.
    """

    common_name: str | None
    organization: str | None = None

    def to_asn1(self) -> x509.Name:
        fields: dict[str, str] = {}
        if self.common_name and self.common_name.strip():
            common_name = self.common_name.strip()
            if len(common_name) > MAX_COMMON_NAME_LENGTH:
                raise ValueError(
                    f"common_name exceeds {MAX_COMMON_NAME_LENGTH} characters: {common_name}"
                )
            fields["common_name"] = common_name
        if self.organization and self.organization.strip():
            fields["organization_name"] = self.organization.strip()
        if not fields:
            raise ValueError("DistinguishedName needs a common_name or an organization.")
        return x509.Name.build(fields)


def _normalize_algorithm_name(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "_")


def signature_algorithm_identifier(algorithm: str) -> algos.SignedDigestAlgorithm:
    normalized = _normalize_algorithm_name(algorithm)
    if normalized == "rsa_pkcs1v15_sha256":
        return algos.SignedDigestAlgorithm({"algorithm": "sha256_rsa"})
    raise ValueError(
        f"Unsupported X.509 signing algorithm '{algorithm}'. "
        "Only rsa_pkcs1v15_sha256 is supported."
    )


def _load_pem_or_der(data: bytes | str, expected_pem_type: str) -> bytes:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    return x509.Certificate.load(_load_pem_or_der(data, "CERTIFICATE"))


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def load_public_key_info(der: bytes) -> keys.PublicKeyInfo:
    return keys.PublicKeyInfo.load(der)


def generate_serial_number() -> int:
    # Positive 159-bit serial to satisfy common X.509 constraints.
    return int.from_bytes(os.urandom(20), byteorder="big") >> 1


def _is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def normalize_hosts(hosts: Iterable[str]) -> list[str]:
    """Strip, drop duplicates and append ``localhost``, preserving order."""

    resolved: list[str] = []
    for host in [*hosts, "localhost"]:
        if not isinstance(host, str) or not host.strip():
            raise ValueError(f"Invalid certificate host entry: {host!r}")
        candidate = host.strip()
        if candidate not in resolved:
            resolved.append(candidate)
    return resolved


def build_san_extension(hosts: Iterable[str]) -> x509.Extension:
    general_names = []
    for host in hosts:
        if _is_ip_literal(host):
            general_names.append(x509.GeneralName(name="ip_address", value=host))
        else:
            general_names.append(x509.GeneralName(name="dns_name", value=host))
    if not general_names:
        raise ValueError("At least one host is required for SAN extension.")
    return x509.Extension(
        {
            "extn_id": "subject_alt_name",
            "critical": False,
            "extn_value": x509.GeneralNames(general_names),
        }
    )


def _key_identifier_extensions(
    subject_public_key_info: keys.PublicKeyInfo,
    issuer_public_key_info: keys.PublicKeyInfo,
) -> list[x509.Extension]:
    return [
        x509.Extension(
            {
                "extn_id": "key_identifier",
                "critical": False,
                "extn_value": subject_public_key_info.sha1,
            }
        ),
        x509.Extension(
            {
                "extn_id": "authority_key_identifier",
                "critical": False,
                "extn_value": x509.AuthorityKeyIdentifier(
                    {"key_identifier": issuer_public_key_info.sha1}
                ),
            }
        ),
    ]


def build_ca_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
) -> x509.Extensions:
    return x509.Extensions(
        [
            x509.Extension(
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": x509.BasicConstraints({"ca": True}),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage(
                        {"digital_signature", "key_cert_sign", "crl_sign"}
                    ),
                }
            ),
            *_key_identifier_extensions(subject_public_key_info, subject_public_key_info),
        ]
    )


def build_leaf_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
    issuer_public_key_info: keys.PublicKeyInfo,
    usage: str,
    hosts: Iterable[str] | None = None,
) -> x509.Extensions:
    if usage == "server":
        eku = ["server_auth"]
    elif usage == "client":
        eku = ["client_auth"]
    else:
        raise ValueError(f"Unsupported leaf usage '{usage}'. Use one of: server, client.")

    extensions: list[x509.Extension] = [
        x509.Extension(
            {
                "extn_id": "basic_constraints",
                "critical": True,
                "extn_value": x509.BasicConstraints({"ca": False}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_usage",
                "critical": True,
                "extn_value": x509.KeyUsage({"digital_signature", "key_encipherment"}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "extended_key_usage",
                "critical": False,
                "extn_value": x509.ExtKeyUsageSyntax(eku),
            }
        ),
        *_key_identifier_extensions(subject_public_key_info, issuer_public_key_info),
    ]
    if hosts is not None:
        extensions.append(build_san_extension(hosts))
    return x509.Extensions(extensions)


def create_certificate(
    *,
    subject: x509.Name,
    issuer: x509.Name,
    subject_public_key_info: keys.PublicKeyInfo,
    extensions: x509.Extensions,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str = "rsa_pkcs1v15_sha256",
    validity_days: int = 1095,
    serial_number: int | None = None,
) -> x509.Certificate:
    if validity_days <= 0:
        raise ValueError("validity_days must be > 0.")
    resolved_serial = serial_number or generate_serial_number()

    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)
    not_after = datetime.now(timezone.utc) + timedelta(days=validity_days)
    signature_id = signature_algorithm_identifier(signing_algorithm)
    tbs_certificate = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": resolved_serial,
            "signature": signature_id,
            "issuer": issuer,
            "validity": x509.Validity(
                {
                    "not_before": x509.Time({"utc_time": not_before}),
                    "not_after": x509.Time({"utc_time": not_after}),
                }
            ),
            "subject": subject,
            "subject_public_key_info": subject_public_key_info,
            "extensions": extensions,
        }
    )
    return x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": signature_id,
            "signature_value": sign_tbs(tbs_certificate.dump()),
        }
    )


def subject_alt_names(certificate: x509.Certificate) -> list[str]:
    """Return SAN values as strings, DNS names and IP addresses alike."""

    san = certificate.subject_alt_name_value
    if san is None:
        return []
    return [str(name.native) for name in san]
