from typing import Dict, Optional


class CloudShareError(Exception):
    """Base error carrying the HTTP status the API layer should report."""

    status_code = 500

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail

    def to_payload(self) -> Dict[str, str]:
        payload = {"error": str(self)}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class NotFoundError(CloudShareError):
    """Raised for unknown ids and for metadata whose content entry is missing."""

    status_code = 404


class GoneError(CloudShareError):
    """Raised when a record has expired or reached its download limit."""

    status_code = 410


class BadRequestError(CloudShareError):
    status_code = 400


class UnauthorizedError(CloudShareError):
    status_code = 401


class UpstreamFetchError(CloudShareError):
    """Raised when the upstream subscription feed cannot be retrieved."""

    status_code = 502


class StoreError(CloudShareError):
    """Raised when the key-value backend fails."""

    status_code = 500
