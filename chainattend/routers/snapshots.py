from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from chainattend.database import get_db
from chainattend.core.auth import Identity, get_current_teacher
from chainattend.routers.sessions import owned_session
from chainattend.schemas.chain import ChainResponse, ChainHistoryResponse
from chainattend.schemas.snapshot import (
    SnapshotRequest, SnapshotResponse, TakeSnapshotResponse, SnapshotComparisonResponse, ChainTraceResponse,
)
from chainattend.services import snapshots
from chainattend.services.notifier import Notifier, get_notifier

router = APIRouter(prefix="/sessions/{session_id}/snapshots", tags=["snapshots"])


@router.post("", response_model=TakeSnapshotResponse, status_code=status.HTTP_201_CREATED)
async def take_snapshot(
    session_id: str,
    snapshot_in: SnapshotRequest,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    snapshot, chains = await snapshots.take_snapshot(db, session_id, snapshot_in.count, notifier, notes=snapshot_in.notes)
    return TakeSnapshotResponse(
        snapshot=SnapshotResponse.model_validate(snapshot),
        chains=[ChainResponse.model_validate(chain) for chain in chains],
    )


@router.get("", response_model=List[SnapshotResponse])
async def list_snapshots(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    return await snapshots.list_snapshots(db, session_id)


@router.get("/compare", response_model=SnapshotComparisonResponse)
async def compare_snapshots(
    session_id: str,
    first: str = Query(...),
    second: str = Query(...),
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    result = await snapshots.compare_snapshots(db, session_id, first, second)
    return SnapshotComparisonResponse(
        first=SnapshotResponse.model_validate(result.first),
        second=SnapshotResponse.model_validate(result.second),
        first_students=result.first_students,
        second_students=result.second_students,
        new_students=result.new_students,
        absent_students=result.absent_students,
        in_both=result.in_both,
        seconds_between=result.seconds_between,
    )


@router.get("/{snapshot_id}/trace", response_model=List[ChainTraceResponse])
async def snapshot_trace(
    session_id: str,
    snapshot_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    traces = await snapshots.snapshot_trace(db, session_id, snapshot_id)
    return [
        ChainTraceResponse(
            chain_id=trace.chain_id,
            state=trace.state,
            last_holder=trace.last_holder,
            last_seq=trace.last_seq,
            hops=[ChainHistoryResponse.model_validate(hop) for hop in trace.hops],
        )
        for trace in traces
    ]
