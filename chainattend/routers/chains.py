from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from chainattend.database import get_db
from chainattend.core.auth import Identity, get_current_teacher
from chainattend.models.enums import ChainPhase
from chainattend.routers.sessions import owned_session
from chainattend.schemas.chain import (
    SeedRequest, ChainResponse, ChainHistoryResponse, SetHolderRequest, SetHolderResponse,
    CloseChainResponse, StalledRequest, StalledResponse,
)
from chainattend.services import chain_engine
from chainattend.services.notifier import Notifier, get_notifier

router = APIRouter(prefix="/sessions/{session_id}/chains", tags=["chains"])


@router.post("/seed", response_model=List[ChainResponse], status_code=status.HTTP_201_CREATED)
async def seed_chains(
    session_id: str,
    seed_in: SeedRequest,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    return await chain_engine.seed_chains(db, session_id, seed_in.phase, seed_in.count, notifier)


@router.post("/reseed", response_model=List[ChainResponse], status_code=status.HTTP_201_CREATED)
async def reseed_chains(
    session_id: str,
    seed_in: SeedRequest,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    return await chain_engine.reseed_chains(db, session_id, seed_in.phase, seed_in.count, notifier)


@router.get("", response_model=List[ChainResponse])
async def list_chains(
    session_id: str,
    phase: Optional[ChainPhase] = None,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    return await chain_engine.list_chains(db, session_id, phase)


@router.post("/stalled", response_model=StalledResponse)
async def detect_stalled(
    session_id: str,
    stalled_in: StalledRequest,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    chain_ids = await chain_engine.detect_stalled_chains(db, session_id, notifier, phase=stalled_in.phase)
    return StalledResponse(chain_ids=chain_ids)


@router.post("/{chain_id}/holder", response_model=SetHolderResponse)
async def set_holder(
    session_id: str,
    chain_id: str,
    holder_in: SetHolderRequest,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    result = await chain_engine.set_chain_holder(
        db, session_id=session_id, chain_id=chain_id, student_id=holder_in.student_id, notifier=notifier,
    )
    return SetHolderResponse(
        chain_id=result.chain_id,
        previous_holder=result.previous_holder,
        new_holder=result.new_holder,
        seq=result.seq,
    )


@router.post("/{chain_id}/close", response_model=CloseChainResponse)
async def close_chain(
    session_id: str,
    chain_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher),
    notifier: Notifier = Depends(get_notifier)
):
    await owned_session(db, session_id, teacher)
    result = await chain_engine.close_chain(db, session_id=session_id, chain_id=chain_id, notifier=notifier)
    return CloseChainResponse(
        chain_id=result.chain_id,
        final_holder=result.final_holder,
        already_closed=result.already_closed,
    )


@router.get("/{chain_id}/history", response_model=List[ChainHistoryResponse])
async def chain_history(
    session_id: str,
    chain_id: str,
    db: AsyncSession = Depends(get_db),
    teacher: Identity = Depends(get_current_teacher)
):
    await owned_session(db, session_id, teacher)
    await chain_engine.load_chain(db, session_id, chain_id)
    return await chain_engine.get_chain_history(db, session_id, chain_id)
