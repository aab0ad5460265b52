"""
Magic-link issue and verification.

A link moves from issued to used (terminal) or expires. Verification marks
the link used with a conditional update, so the same token can only ever
produce one login session.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from teletherapy.auth.mailer import MagicLinkSender, log_magic_link
from teletherapy.core import config
from teletherapy.models.magic_link import MagicLink
from teletherapy.models.user import User, UserSession

logger = logging.getLogger(__name__)

LINK_TYPES = ('login', 'signup')
# Providers stay unverified until an admin approves them.
APPROVAL_REQUIRED_TYPES = ('therapist', 'partner')


class MagicLinkError(Exception):
    """Base class for magic-link failures."""


class MagicLinkNotFound(MagicLinkError):
    pass


class MagicLinkExpired(MagicLinkError):
    pass


class MagicLinkAlreadyUsed(MagicLinkError):
    pass


class AccountNotFound(MagicLinkError):
    pass


class AccountExists(MagicLinkError):
    pass


class AccountNotAllowed(MagicLinkError):
    pass


@dataclass
class VerifiedLogin:
    user: User
    user_session: UserSession


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def mask_token(token: str) -> str:
    return f'{token[:8]}...'


def link_lifetime(auth_type: str) -> timedelta:
    if auth_type == 'admin':
        return timedelta(minutes=config.ADMIN_MAGIC_LINK_EXPIRES_MINUTES)
    return timedelta(minutes=config.MAGIC_LINK_EXPIRES_MINUTES)


def build_verification_url(token: str, auth_type: str) -> str:
    query = urlencode({'token': token, 'auth_type': auth_type})
    return f'{config.APP_BASE_URL.rstrip("/")}/auth/verify?{query}'


def _check_account(db: Session, email: str, auth_type: str, link_type: str) -> None:
    user = db.query(User).filter(User.email == email).first()

    if link_type == 'signup':
        if user is not None:
            raise AccountExists('An account with this email already exists.')
        return

    if user is None:
        raise AccountNotFound('User account not found.')
    if user.user_type != auth_type:
        raise AccountNotAllowed(f'This account cannot sign in as {auth_type}.')
    if user.is_active is False:
        raise AccountNotAllowed('This account has been deactivated.')


def issue_magic_link(
    db: Session,
    email: str,
    auth_type: str,
    link_type: str = 'login',
    metadata: dict | None = None,
    sender: MagicLinkSender = log_magic_link,
    now: datetime | None = None,
) -> MagicLink:
    _check_account(db, email, auth_type, link_type)

    now = now or utcnow()
    magic_link = MagicLink(
        email=email,
        token=secrets.token_urlsafe(32),
        type=link_type,
        auth_type=auth_type,
        expires_at=now + link_lifetime(auth_type),
        link_metadata={**(metadata or {}), 'auth_type': auth_type},
    )
    db.add(magic_link)
    db.commit()
    db.refresh(magic_link)
    logger.info('Issued %s link %s for %s (%s)', link_type, mask_token(magic_link.token), email, auth_type)

    try:
        sender(email, build_verification_url(magic_link.token, auth_type), link_type, auth_type)
    except Exception:
        # The link stays valid; the user can request another email.
        logger.exception('Failed to send magic link %s to %s', mask_token(magic_link.token), email)

    return magic_link


def _get_or_create_user(db: Session, magic_link: MagicLink) -> User:
    user = db.query(User).filter(User.email == magic_link.email).first()

    if user is None:
        if magic_link.type != 'signup':
            raise AccountNotFound('User account not found.')
        metadata = magic_link.link_metadata or {}
        user = User(
            email=magic_link.email,
            full_name=metadata.get('first_name') or magic_link.email.split('@')[0],
            user_type=magic_link.auth_type,
            is_active=True,
            is_verified=magic_link.auth_type not in APPROVAL_REQUIRED_TYPES,
        )
        db.add(user)
        db.flush()
        logger.info('Created %s account %s from signup link', user.user_type, user.email)
    elif user.user_type != magic_link.auth_type or user.is_active is False:
        raise AccountNotAllowed(f'This account cannot sign in as {magic_link.auth_type}.')

    return user


def verify_magic_link(
    db: Session,
    token: str,
    auth_type: str | None = None,
    now: datetime | None = None,
) -> VerifiedLogin:
    """Consume ``token`` and open a login session for its owner.

    Raises MagicLinkNotFound, MagicLinkAlreadyUsed or MagicLinkExpired for a
    bad token, and AccountNotFound/AccountNotAllowed when the link's account
    cannot log in. Nothing is written unless verification succeeds.
    """
    now = now or utcnow()

    query = db.query(MagicLink).filter(MagicLink.token == token)
    if auth_type is not None:
        query = query.filter(MagicLink.auth_type == auth_type)
    magic_link = query.first()

    if magic_link is None:
        raise MagicLinkNotFound('Invalid magic link.')
    if magic_link.used_at is not None:
        raise MagicLinkAlreadyUsed('This magic link has already been used.')
    if magic_link.expires_at < now:
        raise MagicLinkExpired('This magic link has expired.')

    try:
        claimed = db.query(MagicLink).filter(
            MagicLink.id == magic_link.id,
            MagicLink.used_at.is_(None),
        ).update({MagicLink.used_at: now}, synchronize_session=False)
        if claimed == 0:
            raise MagicLinkAlreadyUsed('This magic link has already been used.')

        user = _get_or_create_user(db, magic_link)

        db.query(UserSession).filter(UserSession.user_id == user.id).delete(synchronize_session=False)
        user_session = UserSession(
            user_id=user.id,
            session_token=secrets.token_urlsafe(32),
            expires_at=now + timedelta(days=config.SESSION_EXPIRES_DAYS),
            created_at=now,
            last_accessed_at=now,
        )
        db.add(user_session)
        user.last_login_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    db.refresh(user_session)
    logger.info('Verified magic link %s for %s', mask_token(token), user.email)
    return VerifiedLogin(user=user, user_session=user_session)
