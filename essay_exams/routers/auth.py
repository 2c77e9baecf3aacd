"""Authentication routes: signup, login, logout and admin impersonation."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import Session, select

from essay_exams.auth_utils import hash_password, verify_password
from essay_exams.database import get_session
from essay_exams.deps import (
    SESSION_IMPERSONATOR_KEY,
    SESSION_USER_KEY,
    get_impersonator,
    require_login,
)
from essay_exams.models import User
from essay_exams.utils import sanitize_plain_text

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_PASSWORD_LENGTH = 6


class SignupIn(BaseModel):
    username: str
    display_name: Optional[str] = None
    password: str


class LoginIn(BaseModel):
    username: str
    password: str


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "role": user.role,
        "created_at": user.created_at,
    }


def _find_by_username(session: Session, username: str) -> Optional[User]:
    return session.exec(select(User).where(func.lower(User.username) == username.lower())).first()


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(request: Request, payload: SignupIn = Body(...), session: Session = Depends(get_session)):
    """Create a student account and log it in."""
    username = sanitize_plain_text(payload.username)
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if _find_by_username(session, username):
        raise HTTPException(status_code=409, detail="Username is already taken")

    user = User(
        username=username,
        display_name=sanitize_plain_text(payload.display_name or "") or username,
        password_hash=hash_password(payload.password),
        role="student",
    )
    session.add(user)
    session.commit()
    session.refresh(user)

    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id
    logger.info("New student account %s", user.username)
    return user_to_dict(user)


@router.post("/login")
def login(request: Request, payload: LoginIn = Body(...), session: Session = Depends(get_session)):
    user = _find_by_username(session, payload.username.strip())
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")

    request.session.clear()
    request.session[SESSION_USER_KEY] = user.id
    return user_to_dict(user)


@router.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"status": "success"}


@router.get("/me")
def me(
    current_user: User = Depends(require_login),
    impersonator: Optional[User] = Depends(get_impersonator),
):
    return {
        "user": user_to_dict(current_user),
        "impersonator": user_to_dict(impersonator) if impersonator else None,
    }


@router.post("/impersonate/{user_id}")
def impersonate(
    user_id: int,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
    impersonator: Optional[User] = Depends(get_impersonator),
):
    """Let an admin act as another user until they stop impersonating."""
    if impersonator is not None:
        raise HTTPException(status_code=409, detail="Stop the current impersonation first")
    if current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    target = session.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot impersonate yourself")

    request.session[SESSION_IMPERSONATOR_KEY] = current_user.id
    request.session[SESSION_USER_KEY] = target.id
    logger.info("Admin %s is impersonating user %s", current_user.id, target.id)
    return {"user": user_to_dict(target), "impersonator": user_to_dict(current_user)}


@router.post("/stop-impersonating")
def stop_impersonating(
    request: Request,
    impersonator: Optional[User] = Depends(get_impersonator),
):
    if impersonator is None:
        raise HTTPException(status_code=400, detail="Not impersonating anyone")
    request.session.pop(SESSION_IMPERSONATOR_KEY, None)
    request.session[SESSION_USER_KEY] = impersonator.id
    logger.info("Admin %s stopped impersonating", impersonator.id)
    return {"user": user_to_dict(impersonator), "impersonator": None}
