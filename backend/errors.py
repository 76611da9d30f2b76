"""Field-level validation errors and their JSON rendering.

Validation failures are reported as a ``{"message": ..., "errors": {field: [messages]}}``
body with status 422, whether they come from request parsing or from checks that need
the database (unique email, credential verification).
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_MESSAGE = 'Database unavailable. Verify DATABASE_URL.'


class FieldValidationError(Exception):
    """Raised when one or more input fields fail validation."""

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        super().__init__(first_message(errors))


def first_message(errors: dict[str, list[str]]) -> str:
    for messages in errors.values():
        if messages:
            return messages[0]
    return 'The given data was invalid.'


def _field_label(field: str) -> str:
    return field.replace('_', ' ')


def _message_for(error: dict, field: str) -> str:
    error_type = error.get('type', '')
    if error_type == 'missing':
        return f'The {_field_label(field)} field is required.'
    if error_type == 'enum':
        return f'The selected {_field_label(field)} is invalid.'
    if error_type == 'value_error':
        # pydantic prefixes messages raised from validators.
        message = str(error.get('msg', ''))
        return message.removeprefix('Value error, ')
    if error_type in {'string_type', 'str_type'}:
        return f'The {_field_label(field)} field must be a string.'
    return str(error.get('msg', 'Invalid value.'))


def errors_from_pydantic(errors) -> dict[str, list[str]]:
    """Collapse pydantic error entries into a per-field message map."""
    field_errors: dict[str, list[str]] = {}
    for error in errors:
        location = [str(part) for part in error.get('loc', ()) if part not in ('body', 'query', 'path')]
        field = location[0] if location else 'body'
        field_errors.setdefault(field, []).append(_message_for(error, field))
    return field_errors


def validation_response(errors: dict[str, list[str]], message: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={'message': message or first_message(errors), 'errors': errors},
    )


async def field_validation_error_handler(request: Request, exc: FieldValidationError) -> JSONResponse:
    return validation_response(exc.errors)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return validation_response(errors_from_pydantic(exc.errors()))


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception('Database error while handling %s %s', request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={'detail': DATABASE_UNAVAILABLE_MESSAGE},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FieldValidationError, field_validation_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
