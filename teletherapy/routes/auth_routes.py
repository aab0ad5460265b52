import logging

import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth import jwt_handler, magic_link
from teletherapy.auth.dependencies import SESSION_COOKIE_NAMES, authenticate_session_token
from teletherapy.core import config
from teletherapy.database import get_db
from teletherapy.models.user import USER_TYPES, User, UserSession
from teletherapy.routes.common import database_unavailable

router = APIRouter(tags=['auth'])

logger = logging.getLogger(__name__)

MAGIC_LINK_ERROR_STATUS = {
    magic_link.MagicLinkNotFound: status.HTTP_404_NOT_FOUND,
    magic_link.MagicLinkExpired: status.HTTP_401_UNAUTHORIZED,
    magic_link.MagicLinkAlreadyUsed: status.HTTP_401_UNAUTHORIZED,
    magic_link.AccountNotFound: status.HTTP_404_NOT_FOUND,
    magic_link.AccountExists: status.HTTP_409_CONFLICT,
    magic_link.AccountNotAllowed: status.HTTP_403_FORBIDDEN,
}


class MagicLinkRequest(BaseModel):
    email: str
    auth_type: str = 'individual'
    type: str = 'login'
    first_name: str | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized or '@' not in normalized:
            raise ValueError('A valid email is required.')
        return normalized

    @field_validator('auth_type')
    @classmethod
    def validate_auth_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in USER_TYPES:
            raise ValueError('Invalid account type.')
        return normalized

    @field_validator('type')
    @classmethod
    def validate_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in magic_link.LINK_TYPES:
            raise ValueError('Link type must be login or signup.')
        return normalized

    @field_validator('first_name')
    @classmethod
    def validate_first_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    user_type: str
    is_verified: bool | None = None

    class Config:
        from_attributes = True


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in USER_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid account type.')
    return normalized


def magic_link_http_error(exc: magic_link.MagicLinkError) -> HTTPException:
    status_code = MAGIC_LINK_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=str(exc))


def set_session_cookie(response, role: str, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAMES[role],
        value=token,
        max_age=config.SESSION_EXPIRES_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite='lax',
        secure=config.SESSION_COOKIE_SECURE,
        path='/',
    )


@router.post('/magic-link', status_code=status.HTTP_202_ACCEPTED)
def request_magic_link(data: MagicLinkRequest, db: Session = Depends(get_db)):
    if data.type == 'signup' and data.auth_type == 'admin':
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Admin accounts cannot be created by signup.',
        )

    metadata = {'first_name': data.first_name} if data.first_name else None

    try:
        magic_link.issue_magic_link(db, data.email, data.auth_type, data.type, metadata=metadata)
    except magic_link.MagicLinkError as exc:
        raise magic_link_http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc

    return {'success': True, 'message': 'Check your email for a sign-in link.'}


@router.get('/verify')
def verify_magic_link(
    token: str = Query(..., min_length=1),
    auth_type: str = Query(default='individual'),
    db: Session = Depends(get_db),
):
    role = normalize_role(auth_type)

    try:
        verified = magic_link.verify_magic_link(db, token, role)
    except magic_link.MagicLinkError as exc:
        logger.warning('Magic link verification failed: %s', exc)
        raise magic_link_http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc

    session_token = jwt_handler.create_session_token(
        subject=verified.user.email,
        role=role,
        session_id=verified.user_session.session_token,
    )
    response = JSONResponse(
        content={
            'success': True,
            'user': UserResponse.model_validate(verified.user).model_dump(),
        }
    )
    set_session_cookie(response, role, session_token)
    return response


@router.get('/me', response_model=UserResponse)
def me(request: Request, role: str = Query(default='individual'), db: Session = Depends(get_db)):
    role = normalize_role(role)
    token = request.cookies.get(SESSION_COOKIE_NAMES[role])
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Authentication required.')

    try:
        user: User = authenticate_session_token(db, token, role)
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc

    return user


@router.post('/logout')
def logout(request: Request, role: str = Query(default='individual'), db: Session = Depends(get_db)):
    role = normalize_role(role)
    token = request.cookies.get(SESSION_COOKIE_NAMES[role])

    if token:
        try:
            payload = jwt_handler.decode_session_token(token)
        except jwt.PyJWTError:
            payload = {}
        session_id = payload.get('sid')
        if session_id:
            try:
                db.query(UserSession).filter(UserSession.session_token == session_id).delete(
                    synchronize_session=False
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise database_unavailable(exc) from exc

    response = JSONResponse(content={'success': True})
    response.delete_cookie(SESSION_COOKIE_NAMES[role], path='/')
    return response
