"""Error types raised by the model API client."""

from typing import Any, Optional

NETWORK_ERROR = "NETWORK_ERROR"
STREAM_ERROR = "STREAM_ERROR"
INVALID_RESPONSE = "INVALID_RESPONSE"


class ApiError(Exception):
    """The model API returned a structured error, or could not be reached.

    4xx errors are terminal (the request itself is at fault); 5xx errors are
    retried by the client before being raised.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"status_code={self.status_code!r}, code={self.code!r})"
        )


class NetworkError(ApiError):
    """Transport-level failure (DNS, TLS, timeout, connection reset)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, code=NETWORK_ERROR, details=details)


class StreamError(ApiError):
    """Failure while reading or decoding a server-sent-events stream."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, code=STREAM_ERROR, details=details)
