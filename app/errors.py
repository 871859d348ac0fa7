"""
Error taxonomy for event ingestion and conversation routing.

Each error carries the HTTP status the API layer answers with:

- AuthError (401): missing/invalid webhook signature or channel credential
- ValidationError (422): malformed payload or missing required field
- NotFoundError (404): unknown or inactive instance, conversation or target
- UpstreamError (502): profile lookup, object storage or trigger failure.
  Converted to a fallback value where the failing call is made and never
  propagated out of ingestion.
- ConflictError (409): a state conflict, such as a conversation closed
  while a message was being appended. Ingestion re-routes on it, so it
  does not reach the API. Dedup hits are reported as ``was_new=False``,
  not raised.
- InternalError (500): datastore failure. The provider retries, which is
  safe because ingestion is idempotent.
"""


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    result = "error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class AuthError(ServiceError):
    status_code = 401
    result = "invalid_signature"


class ValidationError(ServiceError):
    status_code = 422
    result = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    result = "not_found"


class UpstreamError(ServiceError):
    status_code = 502
    result = "upstream_error"


class ConflictError(ServiceError):
    status_code = 409
    result = "conflict"


class InternalError(ServiceError):
    status_code = 500
    result = "error"
