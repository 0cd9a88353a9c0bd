"""Translation of lifecycle errors into HTTP responses."""

from fastapi import HTTPException

from marketrun.services.errors import LifecycleError


def http_error(exc: LifecycleError) -> HTTPException:
    """Return the HTTPException carrying the error's stable code."""
    return HTTPException(status_code=exc.status_code, detail={"message": exc.message, "code": exc.code})
