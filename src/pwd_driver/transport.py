from __future__ import annotations

import io
import logging
import tarfile
from typing import Any, Iterator

import requests

from .exceptions import StoreIOError, TransportError
from .models import CertificateBundle, Instance, RemoteEndpoint, key_push_payload

_logger = logging.getLogger("pwd_driver.transport")


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


class SessionTransportClient:
    """
    Synchronous client for the remote session API.

    Every call is a single HTTP request. Failures are raised immediately as
    TransportError and never retried here.
    """

    def __init__(
        self,
        endpoint: RemoteEndpoint,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._http = session or requests.Session()
        self._timeout = timeout

    def __enter__(self) -> "SessionTransportClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _url(self, path: str) -> str:
        return f"{self._endpoint.api_base_url}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        try:
            response = self._http.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            _logger.error("%s %s failed: %s", method, url, _format_exception(exc))
            raise TransportError(
                f"{method} {url} failed: {_format_exception(exc)}", url=url
            ) from exc

        if response.status_code != 200:
            _logger.error("%s %s returned status=%s", method, url, response.status_code)
            response.close()
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                url=url,
            )
        _logger.debug("%s %s returned status=200", method, url)
        return response

    @staticmethod
    def _decode_instance(response: requests.Response) -> Instance:
        try:
            return Instance.from_response(response.json())
        except ValueError as exc:
            raise TransportError(
                f"Could not decode instance from {response.url}: {exc}",
                status_code=response.status_code,
                url=response.url,
            ) from exc
        finally:
            response.close()

    def create_instance(self, session_id: str) -> Instance:
        response = self._request("POST", f"/sessions/{session_id}/instances")
        instance = self._decode_instance(response)
        _logger.info(
            "Created instance name=%s ip=%s session=%s",
            instance.name,
            instance.ip_address,
            session_id,
        )
        return instance

    def create_instance_with_identity(
        self,
        session_id: str,
        bundle: CertificateBundle,
        alias: str,
    ) -> Instance:
        response = self._request(
            "POST",
            f"/sessions/{session_id}/instances",
            json=bundle.to_identity_payload(alias),
        )
        instance = self._decode_instance(response)
        _logger.info(
            "Created instance with embedded identity name=%s ip=%s alias=%s",
            instance.name,
            instance.ip_address,
            alias,
        )
        return instance

    def push_keys(
        self,
        session_id: str,
        instance_name: str,
        server_cert: bytes,
        server_key: bytes,
    ) -> None:
        response = self._request(
            "POST",
            f"/sessions/{session_id}/instances/{instance_name}/keys",
            json=key_push_payload(server_cert, server_key),
        )
        response.close()
        _logger.info("Pushed server keys to instance name=%s", instance_name)

    def fetch_cert_archive(self) -> Iterator[tuple[str, bytes]]:
        """
        Yield ``(filename, content)`` for every regular file in the ``/keys`` tar.

        Any entry that cannot be read in full raises StoreIOError, so a
        partial trust bundle is never installed silently.
        """

        url = self._url("/keys")
        response = self._request("GET", "/keys")
        try:
            raw = response.content
        finally:
            response.close()

        try:
            archive = tarfile.open(fileobj=io.BytesIO(raw), mode="r:*")
        except tarfile.TarError as exc:
            _logger.error("Key archive from %s could not be opened: %s", url, exc)
            raise StoreIOError(
                f"Key archive from {url} is not a tar stream: {_format_exception(exc)}"
            ) from exc

        with archive:
            while True:
                try:
                    member = archive.next()
                except tarfile.TarError as exc:
                    _logger.error("Malformed key archive header from %s: %s", url, exc)
                    raise StoreIOError(
                        f"Malformed key archive header: {_format_exception(exc)}"
                    ) from exc
                if member is None:
                    break
                if not member.isfile():
                    _logger.warning("Skipping non-file key archive entry %s", member.name)
                    continue
                try:
                    extracted = archive.extractfile(member)
                    if extracted is None:
                        raise tarfile.ExtractError("no file data")
                    content = extracted.read()
                except (tarfile.TarError, OSError) as exc:
                    _logger.error("Unreadable key archive entry %s: %s", member.name, exc)
                    raise StoreIOError(
                        f"Error reading key archive entry {member.name}: {_format_exception(exc)}"
                    ) from exc
                if len(content) != member.size:
                    raise StoreIOError(
                        f"Truncated key archive entry {member.name} "
                        f"({len(content)} of {member.size} bytes)"
                    )
                yield member.name, content

    def delete_instance(self, session_id: str, instance_name: str) -> None:
        response = self._request(
            "DELETE", f"/sessions/{session_id}/instances/{instance_name}"
        )
        response.close()
        _logger.info("Deleted instance name=%s session=%s", instance_name, session_id)
