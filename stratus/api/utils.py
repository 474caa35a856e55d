import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from stratus.services.errors import (
    AllocationExhausted,
    NotFoundException,
    ProvisioningInProgressException,
    StratusException,
    TeardownIncomplete,
    ValidationException,
)

ERROR_STATUS = {
    ValidationException: 422,
    NotFoundException: 404,
    ProvisioningInProgressException: 409,
    AllocationExhausted: 503,
    TeardownIncomplete: 500,
}

logger = logging.getLogger(__name__)


def status_for(exc_type: type[BaseException] | None, default: int = 500) -> int:
    """HTTP status for an exception type, honouring subclasses of mapped errors."""
    for klass in getattr(exc_type, "__mro__", ()):
        if klass in ERROR_STATUS:
            return ERROR_STATUS[klass]
    return default


def _exception_handler(request: Request, exc: Exception):
    status = status_for(type(exc))
    if status >= 500:
        logger.exception("Unhandled application error for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    body = {"detail": str(exc)}
    if isinstance(exc, StratusException):
        body["kind"] = exc.kind
        body["retry_safe"] = exc.retry_safe
    if unresolved := getattr(exc, "unresolved", None):
        body["unresolved"] = [handle.describe() for handle in unresolved]
    return JSONResponse(body, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(StratusException)(_exception_handler)
