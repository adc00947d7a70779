from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import uuid4

import bcrypt
from fastapi import Depends, Request, Response
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session

from .db import get_session
from .errors import Forbidden, Unauthenticated
from .models import STAFF_ROLES, Role, User
from .settings import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

SESSION_HEADER = "X-Session-Id"


@dataclass(frozen=True)
class Identity:
    """Who is making a request: a staff user, or an anonymous customer session."""
    role: Role
    user_id: int | None = None
    session_id: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def verify_credential(token: str, session: Session) -> User:
    """
    Resolve a bearer credential to an active staff user.

    Raises Unauthenticated for a bad signature, an expired token, an unknown
    user, or a deactivated account.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        subject = payload.get("sub")
        if subject is None:
            raise Unauthenticated("Could not validate credentials")
        user_id = int(subject)
    except (JWTError, ValueError):
        raise Unauthenticated("Could not validate credentials")

    user = session.get(User, user_id)
    if user is None:
        raise Unauthenticated("The user belonging to this token no longer exists")
    if not user.is_active:
        raise Unauthenticated("User account has been deactivated")
    return user


async def get_token(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)]
) -> str | None:
    """
    Get token from cookie (primary) or Authorization header (fallback).
    """
    cookie_token = request.cookies.get("access_token")
    if cookie_token:
        return cookie_token
    return token


def get_optional_user(
    token: Annotated[str | None, Depends(get_token)],
    session: Annotated[Session, Depends(get_session)],
) -> User | None:
    # A credential that is present but invalid is an error, not an anonymous caller
    if not token:
        return None
    return verify_credential(token, session)


def get_current_user(
    user: Annotated[User | None, Depends(get_optional_user)],
) -> User:
    if user is None:
        raise Unauthenticated("Not authenticated")
    return user


class RoleChecker:
    """Dependency that admits only staff users holding one of `roles`."""

    def __init__(self, *roles: Role):
        self.roles = set(roles)

    def __call__(self, user: Annotated[User, Depends(get_current_user)]) -> User:
        if user.role not in self.roles:
            raise Forbidden(f"User role '{user.role.value}' is not authorized to access this route")
        return user


def get_customer_session(request: Request, response: Response) -> str:
    """
    Return the browser's session id, issuing one in a cookie when absent.

    The id binds an anonymous customer to the orders they place.
    """
    session_id = request.headers.get(SESSION_HEADER) or request.cookies.get(settings.session_cookie_name)
    if session_id:
        return session_id

    session_id = uuid4().hex
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
        max_age=settings.public_order_access_hours * 3600,
    )
    return session_id


def get_identity(
    user: Annotated[User | None, Depends(get_optional_user)],
    session_id: Annotated[str, Depends(get_customer_session)],
) -> Identity:
    if user is not None:
        return Identity(role=user.role, user_id=user.id, session_id=session_id)
    return Identity(role=Role.customer, session_id=session_id)
