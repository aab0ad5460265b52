from datetime import datetime, timedelta, timezone

import jwt

from teletherapy.core import config


def create_session_token(
    subject: str,
    role: str,
    session_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(days=config.SESSION_EXPIRES_DAYS))
    payload = {"sub": subject, "role": role, "sid": session_id, "exp": expire, "iat": now}
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_session_token(token: str) -> dict:
    return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
