"""
Account endpoints: sign-up, login, logout and the current user's profile.

Login sets an httponly cookie and also returns the token in the body so
API clients can send it as a bearer header instead.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from . import models, security
from .db import get_session
from .permissions import PermissionService
from .settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _find_user(session: Session, email: str) -> models.User | None:
    return session.exec(select(models.User).where(models.User.email == email)).first()


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: models.UserRegister,
    session: Annotated[Session, Depends(get_session)],
) -> dict:
    if _find_user(session, payload.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = models.User(
        email=payload.email,
        name=payload.name,
        hashed_password=security.hash_password(payload.password),
        role=models.UserRole.USER,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info(f"Registered customer {user.id}")
    return {"status": "created", "user_id": user.id, "email": user.email}


@router.post("/token")
def login(
    form: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Annotated[Session, Depends(get_session)],
) -> JSONResponse:
    user = _find_user(session, form.username)
    if user is None or not security.check_password(form.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = security.issue_token(user)
    response = JSONResponse({"status": "success", "access_token": token, "token_type": "bearer"})
    response.set_cookie(
        security.AUTH_COOKIE,
        token,
        max_age=settings.access_token_expire_minutes * 60,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )
    return response


@router.post("/logout")
def logout() -> JSONResponse:
    response = JSONResponse({"status": "success", "message": "Logged out"})
    response.delete_cookie(security.AUTH_COOKIE, path="/")
    return response


@router.get("/users/me", response_model=models.UserReadWithPermissions)
def read_me(
    current_user: Annotated[models.User, Depends(security.get_current_user)],
) -> models.UserReadWithPermissions:
    return models.UserReadWithPermissions(
        **current_user.model_dump(),
        permissions=sorted(PermissionService.get_user_permissions(current_user)),
    )
