# trademarket/errors.py
"""Error taxonomy for the job lifecycle.

Every expected outcome is a ``LifecycleError`` subclass carrying the HTTP
status it maps to. Only ``GatewayError`` is retryable.
"""


class LifecycleError(Exception):
    code = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthenticated(LifecycleError):
    code = "unauthenticated"
    status_code = 401


class Forbidden(LifecycleError):
    code = "forbidden"
    status_code = 403


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class InvalidState(LifecycleError):
    """Operation not valid for the current Job/Quote/Payment status."""

    code = "invalid_state"
    status_code = 409


class Conflict(LifecycleError):
    """Duplicate or already-settled resource."""

    code = "conflict"
    status_code = 409


class GatewayError(LifecycleError):
    """Upstream payment failure. Safe to retry."""

    code = "gateway_error"
    status_code = 502
    retryable = True


class Internal(LifecycleError):
    code = "internal"
    status_code = 500
