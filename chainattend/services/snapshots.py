"""
Attendance snapshots: a mid-session presence check.

Taking a snapshot starts SNAPSHOT chains among the students online at that
moment. Everyone who takes part in a hop of those chains has shown they are
in the room; comparing two snapshots shows who arrived or disappeared in
between.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.core.errors import ChainAttendError, ErrorCode, VersionConflict
from chainattend.models.chain import Chain, ChainHistory
from chainattend.models.enums import ChainPhase, ChainState, TEACHER_ORIGIN
from chainattend.models.snapshot import AttendanceSnapshot
from chainattend.models.types import utcnow
from chainattend.services import attendance, chain_engine
from chainattend.services.notifier import Notifier, chain_payload, session_topic
from chainattend.services.sessions import load_session, require_active
from chainattend.utils.ids import new_snapshot_id

logger = logging.getLogger(__name__)

MAX_SNAPSHOT_CHAINS = 20


@dataclass(frozen=True)
class ChainTrace:
    chain_id: str
    state: ChainState
    last_holder: Optional[str]
    last_seq: int
    hops: List[ChainHistory]


@dataclass(frozen=True)
class SnapshotComparison:
    first: AttendanceSnapshot
    second: AttendanceSnapshot
    first_students: List[str]
    second_students: List[str]
    new_students: List[str]
    absent_students: List[str]
    in_both: List[str]
    seconds_between: float


async def get_snapshot(db: AsyncSession, session_id: str, snapshot_id: str) -> Optional[AttendanceSnapshot]:
    result = await db.execute(
        select(AttendanceSnapshot)
        .where(AttendanceSnapshot.session_id == session_id)
        .where(AttendanceSnapshot.snapshot_id == snapshot_id)
    )
    return result.scalar_one_or_none()


async def load_snapshot(db: AsyncSession, session_id: str, snapshot_id: str) -> AttendanceSnapshot:
    snapshot = await get_snapshot(db, session_id, snapshot_id)
    if snapshot is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, f"Snapshot {snapshot_id} not found")
    return snapshot


async def list_snapshots(db: AsyncSession, session_id: str) -> List[AttendanceSnapshot]:
    result = await db.execute(
        select(AttendanceSnapshot)
        .where(AttendanceSnapshot.session_id == session_id)
        .order_by(AttendanceSnapshot.snapshot_index)
    )
    return list(result.scalars().all())


async def snapshot_chains(db: AsyncSession, session_id: str, snapshot_id: str) -> List[Chain]:
    result = await db.execute(
        select(Chain)
        .where(Chain.session_id == session_id)
        .where(Chain.snapshot_id == snapshot_id)
        .order_by(Chain.created_at, Chain.chain_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def take_snapshot(
    db: AsyncSession,
    session_id: str,
    count: int,
    notifier: Notifier,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[AttendanceSnapshot, List[Chain]]:
    """Start up to ``count`` SNAPSHOT chains among the students online right now.

    Unlike seeding, asking for more chains than there are online students
    just starts one chain per student.
    """
    now = now or utcnow()
    session = await load_session(db, session_id)
    require_active(session)
    if not 1 <= count <= MAX_SNAPSHOT_CHAINS:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, f"count must be between 1 and {MAX_SNAPSHOT_CHAINS}")

    online = await attendance.eligible_students(db, session_id, ChainPhase.SNAPSHOT)
    if not online:
        raise ChainAttendError(
            ErrorCode.NO_STUDENTS,
            f"No online students for a snapshot: requested {count}, available 0",
            details={"requested": count, "available": 0},
        )

    result = await db.execute(
        select(func.coalesce(func.max(AttendanceSnapshot.snapshot_index), 0))
        .where(AttendanceSnapshot.session_id == session_id)
    )
    snapshot_index = result.scalar_one() + 1
    holders = chain_engine.pick_holders(online, min(count, len(online)))

    snapshot = AttendanceSnapshot(
        session_id=session_id,
        snapshot_id=new_snapshot_id(),
        snapshot_index=snapshot_index,
        captured_at=now,
        online_students=len(online),
        chains_created=len(holders),
        notes=notes,
    )
    try:
        db.add(snapshot)
        chains = await chain_engine.start_chains(
            db, session_id, ChainPhase.SNAPSHOT, holders, snapshot_index, now, snapshot_id=snapshot.snapshot_id,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise VersionConflict(f"Snapshot #{snapshot_index} of session {session_id} was taken concurrently")

    logger.info(
        "Snapshot #%d in session %s: %d chain(s) among %d online", snapshot_index, session_id, len(chains), len(online),
    )
    topic = session_topic(session_id)
    for chain in chains:
        await notifier.publish(topic, chain_payload(chain))
    return snapshot, chains


async def snapshot_students(db: AsyncSession, session_id: str, snapshot_id: str) -> List[str]:
    """Students who handed on or received a snapshot chain by scan or override."""
    result = await db.execute(
        select(ChainHistory.from_holder, ChainHistory.to_holder)
        .join(Chain, (Chain.session_id == ChainHistory.session_id) & (Chain.chain_id == ChainHistory.chain_id))
        .where(Chain.session_id == session_id)
        .where(Chain.snapshot_id == snapshot_id)
        .where(ChainHistory.sequence > 0)
    )
    students = set()
    for from_holder, to_holder in result.all():
        students.update((from_holder, to_holder))
    students.discard(TEACHER_ORIGIN)
    return sorted(students)


async def compare_snapshots(db: AsyncSession, session_id: str, first_id: str, second_id: str) -> SnapshotComparison:
    if first_id == second_id:
        raise ChainAttendError(ErrorCode.INVALID_REQUEST, "Cannot compare a snapshot with itself")
    first = await load_snapshot(db, session_id, first_id)
    second = await load_snapshot(db, session_id, second_id)

    before = await snapshot_students(db, session_id, first_id)
    after = await snapshot_students(db, session_id, second_id)
    return SnapshotComparison(
        first=first,
        second=second,
        first_students=before,
        second_students=after,
        new_students=sorted(set(after) - set(before)),
        absent_students=sorted(set(before) - set(after)),
        in_both=sorted(set(before) & set(after)),
        seconds_between=(second.captured_at - first.captured_at).total_seconds(),
    )


async def snapshot_trace(db: AsyncSession, session_id: str, snapshot_id: str) -> List[ChainTrace]:
    """Every chain of the snapshot with its hops in sequence order."""
    await load_snapshot(db, session_id, snapshot_id)
    traces = []
    for chain in await snapshot_chains(db, session_id, snapshot_id):
        traces.append(ChainTrace(
            chain_id=chain.chain_id,
            state=chain.state,
            last_holder=chain.last_holder,
            last_seq=chain.last_seq,
            hops=await chain_engine.get_chain_history(db, session_id, chain.chain_id),
        ))
    return traces
