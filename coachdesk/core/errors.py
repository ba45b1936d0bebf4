import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def database_error(exc: SQLAlchemyError, action: str) -> HTTPException:
    """Log a failed store call and turn it into a 500 carrying the message."""
    logger.exception('Error %s', action)
    message = str(getattr(exc, 'orig', None) or exc) or f'Failed {action}'
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = '.'.join(str(part) for part in error.get('loc', ()) if part not in ('body', 'query', 'path'))
        text = error.get('msg', 'Invalid value')
        messages.append(f'{location}: {text}' if location else text)
    return '; '.join(messages) or 'Invalid request'


async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={'error': exc.detail},
        headers=getattr(exc, 'headers', None),
    )


async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={'error': _validation_message(exc)})


async def database_exception_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception('Unhandled database error')
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={'error': str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
