"""Exception taxonomy and translation of non-2xx responses."""

from __future__ import annotations

import json
from http import HTTPStatus

from pydantic import ValidationError as PydanticValidationError

from octopus_client.models import ErrorResponseDetails


class OctopusError(Exception):
    """Base error carrying enough detail to render without re-querying the server."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        errors: list[str] | None = None,
        details: ErrorResponseDetails | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = list(errors or [])
        self.details = details

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message} ({'; '.join(self.errors)})"


class AuthenticationError(OctopusError):
    """401/403: the credential was rejected."""


class NotFoundError(OctopusError):
    """404 or a failed name/id lookup."""


class SpaceNotFoundError(NotFoundError):
    pass


class ValidationError(OctopusError):
    """4xx with structured errors; the message is surfaced verbatim."""


class ConflictError(OctopusError):
    """409 from the server."""


class ReleaseConflictError(ConflictError):
    """A release with the requested version already exists."""


class ServerError(OctopusError):
    """5xx from the server."""


class UnexpectedResponseError(OctopusError):
    """A 2xx body that does not have the expected shape."""


class TransportError(OctopusError):
    """Connection-level failure; retried for idempotent reads only."""


class UnreachableServerError(TransportError):
    pass


class RequestTimeoutError(TransportError):
    pass


class AmbiguousNameError(OctopusError):
    """A name lookup matched more than one resource."""


class AmbiguousSpaceError(AmbiguousNameError):
    pass


class MissingParameterError(OctopusError):
    """A required link template placeholder was not supplied."""


class InvalidOperationError(OctopusError):
    """Programming misuse, e.g. modifying a resource that carries no links."""


class ScheduleExpiredError(OctopusError):
    """A queued task passed its QueueTimeExpiry before it started executing."""


class PollTimeoutExceeded(OctopusError):
    """The overall wait timeout elapsed while the task was still non-terminal."""


class PackageResolutionError(OctopusError):
    """One or more package versions could not be resolved or matched."""


class VersionUnavailableError(OctopusError):
    """The server could not compute a release version."""


def parse_error_details(status_code: int, body: bytes) -> ErrorResponseDetails | None:
    """Parse an ErrorResponseDetails body; None when the body is not in that shape."""
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict) or "ErrorMessage" not in payload:
        return None
    try:
        details = ErrorResponseDetails.model_validate(payload)
    except PydanticValidationError:
        return None
    if details.status_code is None:
        details.status_code = status_code
    return details


def _generic_message(status_code: int) -> str:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Unexpected status"
    return f"HTTP {status_code}: {phrase}"


def error_from_response(status_code: int, body: bytes, *, url: str | None = None) -> OctopusError:
    """Translate a non-2xx response into the matching OctopusError subclass."""
    details = parse_error_details(status_code, body)
    message = details.error_message if details and details.error_message else _generic_message(status_code)
    if url and details is None:
        message = f"{message} ({url})"
    errors = details.errors if details else []

    error_cls: type[OctopusError]
    if status_code in (401, 403):
        error_cls = AuthenticationError
    elif status_code == 404:
        error_cls = NotFoundError
    elif status_code == 409:
        error_cls = ConflictError
    elif 400 <= status_code < 500:
        error_cls = ValidationError
    elif status_code >= 500:
        error_cls = ServerError
    else:
        error_cls = UnexpectedResponseError
    return error_cls(message, status_code=status_code, errors=errors, details=details)
