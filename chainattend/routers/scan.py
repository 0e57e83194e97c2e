from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.database import get_db
from chainattend.core.auth import Identity, get_current_student
from chainattend.core.errors import ChainAttendError
from chainattend.models.enums import ScanFlow
from chainattend.schemas.scan import (
    ChallengeRequest, ChallengeResponse, ChainScanRequest, ChainScanResponse,
    WindowScanRequest, WindowScanResponse,
)
from chainattend.services import challenge, chain_engine, gatekeeper, sessions, token_store
from chainattend.services.notifier import Notifier, get_notifier

router = APIRouter(prefix="/scan", tags=["scan"])


async def _load_for_scan(db: AsyncSession, session_id: str, flow: ScanFlow, scanner_id: str, token_id: str, metadata, ip):
    """Load the session; a missing one is still written to the audit log."""
    try:
        return await sessions.load_session(db, session_id)
    except ChainAttendError as e:
        await gatekeeper.log_scan(
            db, session_id=session_id, flow=flow, result=e.code.value, token_id=token_id,
            scanner_id=scanner_id, metadata=metadata, ip=ip, error=e.message,
        )
        raise


@router.post("/challenge", response_model=ChallengeResponse)
async def request_challenge(
    scan_in: ChallengeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student)
):
    """Scanner side: read the holder's QR and get a code to show them."""
    ip = gatekeeper.get_client_ip(request)
    flow = ScanFlow.CHALLENGE
    session = await _load_for_scan(db, scan_in.session_id, flow, student.id, scan_in.token_id, scan_in.metadata, ip)
    location = await gatekeeper.admit_scan(
        db, session=session, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id,
    )
    issued = await gatekeeper.run_audited(
        db,
        lambda: challenge.request_challenge(
            db,
            session_id=scan_in.session_id,
            chain_id=scan_in.chain_id,
            token_id=scan_in.token_id,
            scanner_id=student.id,
        ),
        session_id=scan_in.session_id, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id, warning=location.warning,
        holder_of=lambda result: result.holder_id,
    )
    return ChallengeResponse(
        challenge_code=issued.code,
        holder_id=issued.holder_id,
        expires_at=issued.expires_at,
        expires_in=issued.expires_in,
        warning=location.warning,
    )


@router.post("/chain", response_model=ChainScanResponse)
async def submit_chain_scan(
    scan_in: ChainScanRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student),
    notifier: Notifier = Depends(get_notifier)
):
    """Holder side: submit the scanner's code to hand the chain on."""
    ip = gatekeeper.get_client_ip(request)
    token = await token_store.get_token(db, scan_in.session_id, scan_in.token_id)
    flow = ScanFlow.ENTRY_CHAIN
    if token is not None and token.chain_id:
        chain = await chain_engine.get_chain(db, scan_in.session_id, token.chain_id)
        if chain is not None:
            flow = ScanFlow.for_phase(chain.phase)

    session = await _load_for_scan(db, scan_in.session_id, flow, student.id, scan_in.token_id, scan_in.metadata, ip)
    location = await gatekeeper.admit_scan(
        db, session=session, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id,
    )
    hop = await gatekeeper.run_audited(
        db,
        lambda: chain_engine.process_chain_scan(
            db,
            session_id=scan_in.session_id,
            token_id=scan_in.token_id,
            etag=scan_in.etag,
            challenge_code=scan_in.challenge_code,
            requester_id=student.id,
            notifier=notifier,
        ),
        session_id=scan_in.session_id, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id, warning=location.warning,
        holder_of=lambda result: result.previous_holder,
    )
    return ChainScanResponse(
        chain_id=hop.chain_id,
        phase=hop.phase,
        previous_holder=hop.previous_holder,
        new_holder=hop.new_holder,
        seq=hop.seq,
        token_id=hop.token_id,
        etag=hop.etag,
        warning=location.warning,
    )


@router.post("/window", response_model=WindowScanResponse)
async def scan_window(
    scan_in: WindowScanRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    student: Identity = Depends(get_current_student),
    notifier: Notifier = Depends(get_notifier)
):
    """Late-entry or early-leave QR shown by the teacher."""
    ip = gatekeeper.get_client_ip(request)
    flow = ScanFlow.for_window(scan_in.kind)
    session = await _load_for_scan(db, scan_in.session_id, flow, student.id, scan_in.token_id, scan_in.metadata, ip)
    location = await gatekeeper.admit_scan(
        db, session=session, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id,
    )
    result = await gatekeeper.run_audited(
        db,
        lambda: sessions.scan_window_token(
            db,
            session_id=scan_in.session_id,
            token_id=scan_in.token_id,
            token_type=scan_in.kind,
            student_id=student.id,
            notifier=notifier,
        ),
        session_id=scan_in.session_id, flow=flow, scanner_id=student.id,
        metadata=scan_in.metadata, ip=ip, token_id=scan_in.token_id, warning=location.warning,
    )
    return WindowScanResponse(
        student_id=result.student_id,
        kind=result.token_type,
        recorded=result.changed,
        warning=location.warning,
    )
