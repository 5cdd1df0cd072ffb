"""
Maps service-layer errors to HTTP responses.

Routers catch CollectionError around service calls and re-raise the result
of to_http_exception.
"""

from fastapi import HTTPException

from .services.exceptions import (
    CollectionError, InsufficientStockError, NotFinalizableError,
    NotFoundError, StateConflictError, TransactionFailure, ValidationError
)

# Most specific first
_STATUS_CODES = [
    (NotFinalizableError, 404),
    (NotFoundError, 404),
    (ValidationError, 400),
    (InsufficientStockError, 400),
    (StateConflictError, 409),
    (TransactionFailure, 500),
]


def status_code_for(exc: CollectionError) -> int:
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


def to_http_exception(exc: CollectionError) -> HTTPException:
    code = status_code_for(exc)
    if code == 500:
        # cause already logged by the unit of work
        return HTTPException(status_code=500, detail="Operation failed and was rolled back")
    if isinstance(exc, InsufficientStockError) and exc.shortfall is not None:
        return HTTPException(status_code=code, detail={"message": str(exc), "shortfall": str(exc.shortfall)})
    return HTTPException(status_code=code, detail=str(exc))
