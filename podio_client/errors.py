"""Exception types raised by the Podio client.

Every API failure is surfaced as a subclass of PodioError carrying the
parsed response body, the HTTP status and the request URL. The mapping from
status codes to exception classes lives in error_for_status().
"""

from typing import Any


class PodioError(Exception):
    """Base error for the Podio client.

    Also used as the catch-all kind for HTTP statuses without a dedicated
    class and for transport failures where no response was received (in
    which case status and body are None).

    Attributes:
        message: Human-readable description
        body: Parsed response body, if any
        status: HTTP status code, if any
        url: URL of the failed request, if known
    """

    def __init__(
        self,
        message: str | None = None,
        body: Any = None,
        status: int | None = None,
        url: str | None = None,
    ):
        self.message = message or _describe(body, status)
        self.body = body
        self.status = status
        self.url = url
        super().__init__(self.message)


class BadRequestError(PodioError):
    """HTTP 400."""


class AuthorizationError(PodioError):
    """HTTP 401, or a failed grant exchange."""


class ForbiddenError(PodioError):
    """HTTP 403, or a request attempted before authenticating."""


class NotFoundError(PodioError):
    """HTTP 404."""


class ConflictError(PodioError):
    """HTTP 409."""


class GoneError(PodioError):
    """HTTP 410."""


class RateLimitError(PodioError):
    """HTTP 420."""


class ServerError(PodioError):
    """HTTP 500."""


class UnavailableError(PodioError):
    """HTTP 502, 503 or 504."""


class UnsupportedOperationError(PodioError):
    """Operation not available for the client's authentication type."""


class ConfigurationError(PodioError):
    """Invalid or incomplete client options."""


class SessionStoreError(PodioError):
    """Reading from or writing to the session store failed."""


class MissingFieldError(PodioError):
    """A required credential field is absent.

    Attributes:
        field: Name of the first missing field
    """

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Credential field {field} is missing")


STATUS_ERRORS: dict[int, type[PodioError]] = {
    400: BadRequestError,
    401: AuthorizationError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    410: GoneError,
    420: RateLimitError,
    500: ServerError,
    502: UnavailableError,
    503: UnavailableError,
    504: UnavailableError,
}


def _describe(body: Any, status: int | None) -> str:
    """Build a default message from an API error body."""
    if isinstance(body, dict):
        detail = body.get("error_description") or body.get("error")
        if detail:
            return f"HTTP {status}: {detail}" if status else str(detail)
    if status is not None:
        return f"Request failed with HTTP {status}"
    return "Request failed"


def error_for_status(
    status: int | None,
    body: Any = None,
    url: str | None = None,
) -> PodioError:
    """Construct the error matching an HTTP status.

    Args:
        status: HTTP status code, or None if no response was received
        body: Parsed response body
        url: URL of the failed request

    Returns:
        An instance of the PodioError subclass for the status. Unknown
        statuses and missing responses yield a plain PodioError.
    """
    error_class = STATUS_ERRORS.get(status, PodioError)  # type: ignore[arg-type]
    return error_class(body=body, status=status, url=url)
