"""Classroom routes: teachers create classrooms, students join with a code."""

import logging
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import Session, select

from essay_exams.auth_utils import generate_join_code
from essay_exams.database import get_session
from essay_exams.deps import require_login, require_role
from essay_exams.models import Classroom, ClassroomMember, User
from essay_exams.routers.auth import user_to_dict
from essay_exams.utils import sanitize_plain_text

logger = logging.getLogger(__name__)

router = APIRouter()


class ClassroomIn(BaseModel):
    name: str
    is_public: bool = False


class JoinIn(BaseModel):
    join_code: str


def _member_count(session: Session, classroom_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(ClassroomMember).where(ClassroomMember.classroom_id == classroom_id)
    ).one()


def classroom_to_dict(session: Session, classroom: Classroom, include_code: bool = True) -> dict:
    data = {
        "id": classroom.id,
        "name": classroom.name,
        "teacher_id": classroom.teacher_id,
        "is_public": classroom.is_public,
        "created_at": classroom.created_at,
        "member_count": _member_count(session, classroom.id),
    }
    if include_code:
        data["join_code"] = classroom.join_code
    return data


def _get_classroom(session: Session, classroom_id: int) -> Classroom:
    classroom = session.get(Classroom, classroom_id)
    if not classroom:
        raise HTTPException(status_code=404, detail="Classroom not found")
    return classroom


def _unused_join_code(session: Session) -> str:
    while True:
        code = generate_join_code()
        if not session.exec(select(Classroom).where(Classroom.join_code == code)).first():
            return code


@router.post("", status_code=status.HTTP_201_CREATED)
def create_classroom(
    payload: ClassroomIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["teacher", "admin"])),
):
    name = sanitize_plain_text(payload.name)
    if not name:
        raise HTTPException(status_code=400, detail="Classroom name is required")
    classroom = Classroom(
        name=name,
        teacher_id=current_user.id,
        join_code=_unused_join_code(session),
        is_public=payload.is_public,
    )
    session.add(classroom)
    session.commit()
    session.refresh(classroom)
    logger.info("Classroom %s created by user %s", classroom.id, current_user.id)
    return classroom_to_dict(session, classroom)


@router.get("")
def list_classrooms(
    session: Session = Depends(get_session),
    current_user: User = Depends(require_login),
) -> List[dict]:
    """Admins see every classroom, teachers their own, students those they joined."""
    stmt = select(Classroom)
    if current_user.role == "teacher":
        stmt = stmt.where(Classroom.teacher_id == current_user.id)
    elif current_user.role == "student":
        stmt = stmt.join(ClassroomMember, ClassroomMember.classroom_id == Classroom.id).where(
            ClassroomMember.student_id == current_user.id
        )
    classrooms = session.exec(stmt.order_by(Classroom.id)).all()
    include_code = current_user.role != "student"
    return [classroom_to_dict(session, c, include_code=include_code) for c in classrooms]


@router.get("/{classroom_id}")
def get_classroom(
    classroom_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["teacher", "admin"])),
):
    classroom = _get_classroom(session, classroom_id)
    if current_user.role != "admin" and classroom.teacher_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    students = session.exec(
        select(User)
        .join(ClassroomMember, ClassroomMember.student_id == User.id)
        .where(ClassroomMember.classroom_id == classroom.id)
        .order_by(User.display_name)
    ).all()
    data = classroom_to_dict(session, classroom)
    data["students"] = [user_to_dict(s) for s in students]
    return data


@router.post("/join")
def join_classroom(
    payload: JoinIn = Body(...),
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["student"])),
):
    code = payload.join_code.strip().upper()
    classroom = session.exec(select(Classroom).where(Classroom.join_code == code)).first()
    if not classroom:
        raise HTTPException(status_code=404, detail="Invalid join code")

    existing = session.exec(
        select(ClassroomMember).where(
            (ClassroomMember.classroom_id == classroom.id) & (ClassroomMember.student_id == current_user.id)
        )
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="You are already a member of this classroom")

    session.add(ClassroomMember(classroom_id=classroom.id, student_id=current_user.id))
    session.commit()
    logger.info("User %s joined classroom %s", current_user.id, classroom.id)
    return classroom_to_dict(session, classroom, include_code=False)


def _remove_member(session: Session, classroom_id: int, student_id: int) -> None:
    membership = session.exec(
        select(ClassroomMember).where(
            (ClassroomMember.classroom_id == classroom_id) & (ClassroomMember.student_id == student_id)
        )
    ).first()
    if not membership:
        raise HTTPException(status_code=404, detail="Student is not a member of this classroom")
    session.delete(membership)
    session.commit()


@router.post("/{classroom_id}/leave")
def leave_classroom(
    classroom_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["student"])),
):
    _get_classroom(session, classroom_id)
    _remove_member(session, classroom_id, current_user.id)
    return {"status": "success"}


@router.delete("/{classroom_id}/students/{student_id}")
def remove_student(
    classroom_id: int,
    student_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role(["teacher", "admin"])),
):
    classroom = _get_classroom(session, classroom_id)
    if current_user.role != "admin" and classroom.teacher_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    _remove_member(session, classroom_id, student_id)
    logger.info("User %s removed student %s from classroom %s", current_user.id, student_id, classroom_id)
    return {"status": "success"}
