"""Shared FastAPI dependencies for database access and authentication."""

from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlmodel import Session

from essay_exams.database import get_session
from essay_exams.models import User

SESSION_USER_KEY = "user_id"
SESSION_IMPERSONATOR_KEY = "impersonator_id"


def get_current_user(
    request: Request, session: Session = Depends(get_session)
) -> Optional[User]:
    """Return the effective user of the session cookie, if any.

    While an admin impersonates someone, ``user_id`` holds the impersonated
    user and ``impersonator_id`` the admin.
    """
    user_id = request.session.get(SESSION_USER_KEY)
    if not user_id:
        return None

    user = session.get(User, user_id)
    if not user:
        # Clear any stale session
        request.session.clear()
        return None
    return user


def get_impersonator(
    request: Request, session: Session = Depends(get_session)
) -> Optional[User]:
    impersonator_id = request.session.get(SESSION_IMPERSONATOR_KEY)
    if not impersonator_id:
        return None
    return session.get(User, impersonator_id)


def require_login(current_user: Optional[User] = Depends(get_current_user)) -> User:
    """Ensure that a user is logged in."""
    if current_user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return current_user


def require_role(required_roles: list[str]):
    """Dependency factory that enforces one of the given roles."""

    def wrapper(current_user: User = Depends(require_login)) -> User:
        if current_user.role not in required_roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return current_user

    return wrapper
