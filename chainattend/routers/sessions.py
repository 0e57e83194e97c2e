from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from chainattend.database import get_db
from chainattend.core.auth import Identity, get_current_identity, get_current_student, get_current_teacher
from chainattend.models.enums import TokenType
from chainattend.schemas.attendance import AttendanceResponse, OnlineUpdate
from chainattend.schemas.session import SessionCreate, SessionResponse
from chainattend.schemas.token import TokenResponse
from chainattend.services import attendance, sessions
from chainattend.services.chain_engine import current_token_for
from chainattend.services.notifier import Notifier, get_notifier

router = APIRouter(prefix="/sessions", tags=["sessions"])


async def owned_session(db: AsyncSession, session_id: str, teacher: Identity):
    session = await sessions.load_session(db, session_id)
    sessions.require_owner(session, teacher.id)
    return session


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    session_in: SessionCreate,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    return await sessions.create_session(db, teacher_id=teacher.id, **session_in.model_dump())


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity)
):
    return await sessions.load_session(db, session_id)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    await sessions.delete_session(db, session_id)


@router.post("/{session_id}/join", response_model=AttendanceResponse)
async def join_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student)
):
    return await sessions.join_session(db, session_id, student.id)


@router.post("/{session_id}/online", response_model=AttendanceResponse)
async def heartbeat(
    session_id: str,
    update_in: OnlineUpdate,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student)
):
    return await sessions.set_online(db, session_id, student.id, update_in.is_online)


@router.post("/{session_id}/end", response_model=List[AttendanceResponse])
async def end_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    return await sessions.end_session(db, session_id, notifier)


@router.get("/{session_id}/attendance", response_model=List[AttendanceResponse])
async def list_attendance(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    return await attendance.list_records(db, session_id)


@router.post("/{session_id}/attendance/{student_id}/entry", response_model=AttendanceResponse)
async def mark_entry(
    session_id: str,
    student_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    return await sessions.mark_entry_manually(db, session_id, student_id, notifier)


@router.post("/{session_id}/attendance/{student_id}/exit", response_model=AttendanceResponse)
async def mark_exit(
    session_id: str,
    student_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    return await sessions.mark_exit_manually(db, session_id, student_id, notifier)


# Late-entry / early-leave QR windows

@router.post("/{session_id}/windows/{kind}/start", response_model=TokenResponse)
async def start_window(
    session_id: str,
    kind: TokenType,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    return await sessions.start_window(db, session_id, kind)


@router.post("/{session_id}/windows/{kind}/stop", status_code=status.HTTP_204_NO_CONTENT)
async def stop_window(
    session_id: str,
    kind: TokenType,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    await sessions.stop_window(db, session_id, kind)


@router.get("/{session_id}/windows/{kind}/token", response_model=TokenResponse)
async def window_token(
    session_id: str,
    kind: TokenType,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    return await sessions.current_window_token(db, session_id, kind)


@router.get("/{session_id}/my-token", response_model=List[TokenResponse])
async def my_token(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student)
):
    """Chain tokens the caller currently holds; empty when they hold none."""
    await sessions.load_session(db, session_id)
    return await current_token_for(db, session_id, student.id)
