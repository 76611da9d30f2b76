import logging
from datetime import datetime
from typing import Any

from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth import jwt_handler
from backend.auth.dependencies import (
    ADMIN_REQUIRED_MESSAGE,
    get_current_user,
    get_db,
    require_admin,
    security,
)
from backend.auth.passwords import hash_password, verify_password
from backend.core import config
from backend.database import ensure_user_schema
from backend.errors import (
    DATABASE_UNAVAILABLE_MESSAGE,
    FieldValidationError,
    errors_from_pydantic,
    validation_response,
)
from backend.models.user import Role, User

logger = logging.getLogger(__name__)

router = APIRouter(tags=['auth'])

MAX_STRING_LENGTH = 255
MIN_PASSWORD_LENGTH = 8
EMAIL_TAKEN_MESSAGE = 'The email has already been taken.'
INVALID_CREDENTIALS_MESSAGE = 'The provided credentials are incorrect.'
CURRENT_PASSWORD_INCORRECT_MESSAGE = 'The current password is incorrect.'
INVALID_ROLE_MESSAGE = 'The selected role is invalid.'


def _require_text(value: str, field: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'The {field} field is required.')
    if len(normalized) > MAX_STRING_LENGTH:
        raise ValueError(f'The {field} field must not be greater than {MAX_STRING_LENGTH} characters.')
    return normalized


def _normalize_email(value: str) -> str:
    normalized = _require_text(value, 'email').lower()
    try:
        validate_email(normalized, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValueError('The email field must be a valid email address.') from exc
    return normalized


def _check_password_length(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f'The password field must be at least {MIN_PASSWORD_LENGTH} characters.')
    return value


def _check_confirmation(value: str | None, info: ValidationInfo) -> str | None:
    password = info.data.get('password')
    if password and value != password:
        raise ValueError('The password field confirmation does not match.')
    return value


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    password_confirmation: str | None = Field(default=None, validate_default=True)
    role: Role | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _require_text(value, 'name')

    @field_validator('email')
    @classmethod
    def validate_email_address(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        if not value:
            raise ValueError('The password field is required.')
        return _check_password_length(value)

    @field_validator('password_confirmation')
    @classmethod
    def validate_password_confirmation(cls, value: str | None, info: ValidationInfo) -> str | None:
        return _check_confirmation(value, info)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def validate_email_address(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        if not value:
            raise ValueError('The password field is required.')
        return value


class ProfileUpdateRequest(BaseModel):
    name: str
    email: str
    password: str | None = None
    password_confirmation: str | None = Field(default=None, validate_default=True)
    current_password: str | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _require_text(value, 'name')

    @field_validator('email')
    @classmethod
    def validate_email_address(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str | None) -> str | None:
        # An empty password means "keep the current one".
        if not value:
            return None
        return _check_password_length(value)

    @field_validator('password_confirmation')
    @classmethod
    def validate_password_confirmation(cls, value: str | None, info: ValidationInfo) -> str | None:
        return _check_confirmation(value, info)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    role: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_user_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc


def serialize_user(user: User) -> dict:
    return UserResponse.model_validate(user).model_dump(mode='json')


def ensure_email_available(db: Session, email: str, ignore_id: int | None = None) -> None:
    query = db.query(User.id).filter(User.email == email)
    if ignore_id is not None:
        query = query.filter(User.id != ignore_id)
    if query.first() is not None:
        raise FieldValidationError({'email': [EMAIL_TAKEN_MESSAGE]})


def validate_payload(
    model: type[BaseModel],
    payload: dict[str, Any],
    db: Session,
    ignore_id: int | None = None,
    required_with: dict[str, str] | None = None,
):
    """Validate ``payload`` against ``model`` and the users table in one pass.

    Field errors, the unique email check and ``required_with`` pairs
    (field -> the input that makes it required) are merged into a single
    map ordered like the model's fields.
    """
    errors: dict[str, list[str]] = {}
    data = None
    try:
        data = model.model_validate(payload)
    except ValidationError as exc:
        errors = errors_from_pydantic(exc.errors())

    if 'email' not in errors:
        try:
            ensure_email_available(db, _normalize_email(payload['email']), ignore_id=ignore_id)
        except FieldValidationError as exc:
            errors.update(exc.errors)

    for field, other in (required_with or {}).items():
        if payload.get(other) and not payload.get(field) and field not in errors:
            label = field.replace('_', ' ')
            errors[field] = [f'The {label} field is required when {other} is present.']

    if errors:
        order = list(model.model_fields)
        raise FieldValidationError(
            dict(sorted(errors.items(), key=lambda item: order.index(item[0]) if item[0] in order else len(order)))
        )
    return data


def resolve_role(requested: Role | None) -> str:
    role = requested or Role.user
    if role == Role.admin and not config.ALLOW_ADMIN_SELF_REGISTRATION:
        raise FieldValidationError({'role': [INVALID_ROLE_MESSAGE]})
    return role.value


@router.post('/register', status_code=status.HTTP_201_CREATED)
def register(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        data = validate_payload(RegisterRequest, payload, db)
        role = resolve_role(data.role)

        user = User(
            name=data.name,
            email=data.email,
            password=hash_password(data.password),
            role=role,
        )
        db.add(user)
        db.commit()
    except IntegrityError as exc:
        # Lost a race with a concurrent registration for the same email.
        db.rollback()
        raise FieldValidationError({'email': [EMAIL_TAKEN_MESSAGE]}) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc

    logger.info('Registered user %s with role %s', user.id, role)
    return {'message': 'User registered successfully.'}


@router.post('/login')
def login(data: LoginRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        user = db.query(User).filter(User.email == data.email).first()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc

    if user is None or not verify_password(data.password, user.password):
        logger.warning('Rejected login attempt')
        raise FieldValidationError({'email': [INVALID_CREDENTIALS_MESSAGE]})

    token = jwt_handler.create_access_token(user.id)
    return {'token': token}


@router.api_route('/profile', methods=['PUT', 'PATCH'])
def update_profile(
    payload: dict[str, Any] = Body(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = current_user.id
    try:
        data = validate_payload(
            ProfileUpdateRequest,
            payload,
            db,
            ignore_id=user_id,
            required_with={'current_password': 'password'},
        )

        if data.password and not verify_password(data.current_password, current_user.password):
            raise FieldValidationError({'current_password': [CURRENT_PASSWORD_INCORRECT_MESSAGE]})

        update_data = {
            'name': data.name,
            'email': data.email,
        }
        if data.password:
            update_data['password'] = hash_password(data.password)

        # Bulk UPDATE; ORM flush events on the instance are not fired.
        db.query(User).filter(User.id == user_id).update(update_data, synchronize_session=False)
        db.commit()

        updated_user = db.get(User, user_id)
        return {
            'message': 'Profile updated successfully',
            'user': serialize_user(updated_user),
        }
    except FieldValidationError as exc:
        return validation_response(exc.errors, message='Validation error')
    except Exception as exc:
        db.rollback()
        logger.exception('Profile update failed for user %s', user_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                'message': 'An error occurred while updating the profile',
                'error': 'Internal server error' if config.is_production() else str(exc),
            },
        )


@router.delete('/users/{user_id}')
def delete_user(
    user_id: str,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    if config.REQUIRE_ADMIN_FOR_DELETE:
        require_admin(get_current_user(credentials, db))

    ensure_database_ready()

    try:
        user = db.get(User, int(user_id))
    except (ValueError, OverflowError):
        user = None
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc

    if user is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={'error': 'User not found'})

    try:
        db.delete(user)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc

    logger.info('Deleted user %s', user_id)
    return {'message': 'User deleted successfully'}


@router.get('/users')
def list_users(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not current_user.is_admin:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={'message': ADMIN_REQUIRED_MESSAGE})

    ensure_database_ready()

    try:
        users = db.query(User).order_by(User.id.asc()).all()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE_MESSAGE,
        ) from exc

    return {'users': [serialize_user(user) for user in users]}


@router.get('/me')
def me(current_user: User = Depends(get_current_user)):
    return serialize_user(current_user)
