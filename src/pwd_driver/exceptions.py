from __future__ import annotations


class PwdDriverError(RuntimeError):
    """Base driver error."""


class ConfigurationError(PwdDriverError):
    """Driver configuration is invalid or incomplete."""


class TransportError(PwdDriverError):
    """A call to the remote session API failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class GenerationError(PwdDriverError):
    """Key or certificate synthesis failed."""


class StoreIOError(PwdDriverError):
    """Reading or writing local certificate material failed."""


class CertificateNotFoundError(StoreIOError):
    """Requested certificate material does not exist in the store."""


class UnsupportedOperationError(PwdDriverError):
    """The operation is owned by the remote session system."""

    def __init__(self, message: str = "Not implemented") -> None:
        super().__init__(message)
