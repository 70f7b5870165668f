from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from supply_desk.errors import (
    AlreadyAssignedError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    SupplyDeskError,
    ValidationError,
)

STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, 'not_found'),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT, 'validation_error'),
    (InsufficientStockError, status.HTTP_409_CONFLICT, 'insufficient_stock'),
    (AlreadyAssignedError, status.HTTP_409_CONFLICT, 'already_assigned'),
    (ConflictError, status.HTTP_409_CONFLICT, 'conflict'),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE, 'persistence_error'),
]


def error_payload(exc: SupplyDeskError) -> tuple[int, dict]:
    for error_type, status_code, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            body = {'error': code, 'detail': str(exc)}
            if isinstance(exc, InsufficientStockError):
                body.update(item_id=exc.item_id, available=exc.available, requested=exc.requested)
            if isinstance(exc, PersistenceError):
                body['detail'] = 'The request could not be saved. Try again.'
            return status_code, body
    return status.HTTP_400_BAD_REQUEST, {'error': 'error', 'detail': str(exc)}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SupplyDeskError)
    async def supply_desk_error_handler(request: Request, exc: SupplyDeskError):
        status_code, body = error_payload(exc)
        return JSONResponse(body, status_code=status_code)
