from datetime import datetime, timezone

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from teletherapy.auth import jwt_handler
from teletherapy.database import get_db
from teletherapy.models.user import USER_TYPES, User, UserSession

SESSION_COOKIE_NAMES = {
    'individual': 'trpi_individual_user',
    'therapist': 'trpi_therapist_user',
    'partner': 'trpi_partner_user',
    'admin': 'trpi_admin_user',
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def authenticate_session_token(db: Session, token: str, role: str, now: datetime | None = None) -> User:
    try:
        payload = jwt_handler.decode_session_token(token)
    except jwt.PyJWTError as exc:
        raise _unauthorized('Invalid session.') from exc

    if payload.get('role') != role or not payload.get('sid'):
        raise _unauthorized('Invalid session.')

    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    user_session = db.query(UserSession).filter(UserSession.session_token == payload['sid']).first()
    if user_session is None or user_session.expires_at < now:
        raise _unauthorized('Session expired. Please sign in again.')

    user = db.get(User, user_session.user_id)
    if user is None or user.email != payload.get('sub') or user.user_type != role or user.is_active is False:
        raise _unauthorized('Invalid session.')

    user_session.last_accessed_at = now
    db.commit()
    return user


def require_roles(*roles: str):
    """Dependency returning the user behind the first role cookie that authenticates.

    A stale cookie for one role does not hide a valid cookie for another; the
    last failure is raised when none succeed.
    """
    unknown = set(roles) - set(USER_TYPES)
    if unknown:
        raise ValueError(f'Unknown roles: {sorted(unknown)}')

    def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
        failure = _unauthorized('Authentication required.')
        for role in roles:
            token = request.cookies.get(SESSION_COOKIE_NAMES[role])
            if not token:
                continue
            try:
                return authenticate_session_token(db, token, role)
            except HTTPException as exc:
                failure = exc
        raise failure

    return get_current_user
