from typing import Optional


class ImageGenerationError(Exception):
    """
    Base class for every failure the generation pipeline knows how to classify.
    `kind` is a short stable label used in logs, attempt records and rationales.
    """

    kind = "generation"

    def __init__(self, message: str = "", *, backend: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.backend = backend
        self.status_code = status_code

    def __str__(self) -> str:
        prefix = f"[{self.backend}] " if self.backend else ""
        return f"{prefix}{self.message}"


class ConfigurationError(ImageGenerationError):
    """Missing or placeholder credentials / project settings. Raised before any network call."""

    kind = "configuration"


class AuthenticationError(ImageGenerationError):
    """HTTP 401/403. Short-circuits retries on the current backend."""

    kind = "authentication"


class NetworkError(ImageGenerationError):
    """Connectivity/transport failure or transient upstream status. Retried."""

    kind = "network"


class GenerationTimeoutError(ImageGenerationError, TimeoutError):
    """Polling or wall-clock budget exceeded. Terminal for the backend."""

    kind = "timeout"


class DecodingError(ImageGenerationError):
    """Malformed response body. Terminal for the backend, never retried."""

    kind = "decoding"


class UpstreamGenerationError(ImageGenerationError):
    """Backend reported a failed or canceled job."""

    kind = "upstream"


class QuotaExceededError(ImageGenerationError):
    """Generation rate guard rejected the call."""

    kind = "quota"

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class GenerationFailedError(ImageGenerationError):
    """Every stage of the cascade failed, including the local synthesizer."""

    kind = "exhausted"


def classify_status(status_code: int, body: str, *, backend: str) -> ImageGenerationError:
    """
    Map a non-2xx HTTP status onto the taxonomy.
    401/403 are auth failures, 408/429/5xx are transient, anything else is an upstream rejection.
    """
    detail = f"HTTP {status_code}: {(body or '')[:300]}"
    if status_code in (401, 403):
        return AuthenticationError(detail, backend=backend, status_code=status_code)
    if status_code in (408, 429) or status_code >= 500:
        return NetworkError(detail, backend=backend, status_code=status_code)
    return UpstreamGenerationError(detail, backend=backend, status_code=status_code)
