"""
WhisperDrop errors.

Every error carries a stable machine-readable ``code`` and a suggested HTTP
``status`` so the API layer can translate it without a lookup table:

    raise InvalidInput("file size must be >= 0", data={"file_size_bytes": -1})
"""

from typing import Any, Mapping


class WhisperDropError(Exception):
    """Base class for WhisperDrop errors."""

    default_code = "whisperdrop_error"
    default_status = 400

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        status: int | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = int(status if status is not None else self.default_status)
        self.data: dict[str, Any] = dict(data) if data else {}

    def __str__(self) -> str:
        if self.message:
            return f"{self.code}: {self.message}"
        return self.code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data}


class DiscoveryTimeout(WhisperDropError):
    """A scan window closed before every expected device answered."""

    default_code = "discovery_timeout"
    default_status = 504


class ProbeUnreachable(WhisperDropError):
    """A single device did not answer a probe."""

    default_code = "probe_unreachable"
    default_status = 504


class AddressResolutionError(WhisperDropError):
    """No local address candidate was produced in time."""

    default_code = "address_resolution_failed"
    default_status = 503


AddressResolutionFailed = AddressResolutionError


class DecryptionFailed(WhisperDropError):
    """Wrong key, corrupted ciphertext or tampering."""

    default_code = "decryption_failed"
    default_status = 400


class InvalidInput(WhisperDropError, ValueError):
    default_code = "invalid_input"
    default_status = 422


class UploadError(WhisperDropError):
    """The upload endpoint rejected a request or could not be reached."""

    default_code = "upload_failed"
    default_status = 502
