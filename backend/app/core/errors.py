"""Error taxonomy for the dunning engine.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the API
layer can render a structured response without knowing the concrete type.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class DunningError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "dunning_error"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(DunningError):
    """Missing or malformed input. No state has been mutated."""

    code = "validation_error"
    status_code = 422


class AuthenticationError(DunningError):
    """Missing/invalid signature or insufficient caller privilege."""

    code = "authentication_error"
    status_code = 401


class NotFoundError(DunningError):
    code = "not_found"
    status_code = 404


class ConflictError(DunningError):
    """A conditional case update lost its race.

    Soft error: the lifecycle service logs it and treats its own operation
    as a no-op instead of surfacing it.
    """

    code = "conflict"
    status_code = 409


class GatewayError(DunningError):
    """The payment gateway declined a charge.

    Gateway adapters translate this into a failed ``ChargeResult``; it is an
    expected business outcome and never escapes ``process_retry``.
    """

    code = "gateway_declined"
    status_code = 402

    def __init__(self, message: str, *, decline_code: str | None = None):
        super().__init__(message)
        self.decline_code = decline_code


class DependencyError(DunningError):
    """The store, notifier, gateway or account-access collaborator is unreachable."""

    code = "dependency_unavailable"
    status_code = 503


async def dunning_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a ``DunningError`` as ``{"code": ..., "detail": ...}``."""
    assert isinstance(exc, DunningError)
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "detail": exc.message},
    )
