"""Admin routes for managing users and their roles."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from essay_exams.database import get_session
from essay_exams.deps import require_role
from essay_exams.models import ROLES, User
from essay_exams.routers.auth import user_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()


class RoleIn(BaseModel):
    role: str


@router.get("/users")
def list_users(
    sort: Optional[str] = Query("created"),
    direction: Optional[str] = Query("desc"),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["admin"])),
):
    """List users with optional sorting by column."""
    users = session.exec(select(User)).all()

    key_map = {
        "username": lambda u: u.username.lower(),
        "name": lambda u: (u.display_name or "").lower(),
        "role": lambda u: u.role or "",
        "created": lambda u: u.created_at,
    }

    sort_key = key_map.get(sort or "created", key_map["created"])
    is_desc = (direction or "desc").lower() == "desc"

    return [user_to_dict(u) for u in sorted(users, key=sort_key, reverse=is_desc)]


@router.patch("/users/{user_id}/role")
def change_role(
    user_id: int,
    payload: RoleIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["admin"])),
):
    if payload.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(ROLES)}")
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot change your own role")

    user.role = payload.role
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("Admin %s set role of user %s to %s", current_user.id, user.id, user.role)
    return user_to_dict(user)
