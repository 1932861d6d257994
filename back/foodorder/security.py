from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from .db import get_session
from .models import User, UserRole
from .permissions import Permissions, PermissionService
from .settings import settings

AUTH_COOKIE = "access_token"

bearer_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Who is acting on an order. Passed explicitly into services."""
    user_id: int
    role: UserRole

    @property
    def is_operator(self) -> bool:
        return self.role == UserRole.ADMIN

    def can(self, permission: Permissions) -> bool:
        return PermissionService.has_permission(self.role, permission)

    @classmethod
    def for_user(cls, user: User) -> "AuthContext":
        return cls(user_id=user.id, role=user.role)


def hash_password(password: str) -> str:
    salted = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return salted.decode("utf-8")


def check_password(password: str, hashed: str) -> bool:
    # Legacy rows may hold a non-bcrypt value; treat those as a mismatch
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def issue_token(user: User, lifetime: timedelta | None = None) -> str:
    """Sign a JWT for ``user``. Bumping ``user.token_version`` revokes it."""
    lifetime = lifetime or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {
        "sub": user.email,
        "role": user.role.value,
        "token_version": user.token_version,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def request_token(
    request: Request,
    bearer: Annotated[str | None, Depends(bearer_scheme)],
) -> str:
    """The session cookie wins over an Authorization header."""
    token = request.cookies.get(AUTH_COOKIE) or bearer
    if not token:
        raise _unauthorized("Not authenticated")
    return token


async def get_current_user(
    token: Annotated[str, Depends(request_token)],
    session: Annotated[Session, Depends(get_session)],
) -> User:
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise _unauthorized("Could not validate credentials")

    email = claims.get("sub")
    user = session.exec(select(User).where(User.email == email)).first() if email else None
    if user is None or user.token_version != claims.get("token_version", 0):
        raise _unauthorized("Could not validate credentials")
    return user


async def get_auth_context(
    current_user: Annotated[User, Depends(get_current_user)],
) -> AuthContext:
    return AuthContext.for_user(current_user)


class PermissionChecker:
    """Dependency that resolves the current user and enforces one permission."""

    def __init__(self, required_permission: Permissions):
        self.required_permission = required_permission

    async def __call__(
        self,
        current_user: Annotated[User, Depends(get_current_user)],
    ) -> User:
        if not PermissionService.has_permission(current_user.role, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized",
            )
        return current_user
