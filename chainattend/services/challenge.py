"""
One-time challenge codes proving the scanner and the holder are together.

The scanner asks for a code against the holder's displayed token, reads it
out, and the holder submits it with the hop. Only a salted hash of the code
is persisted on the token.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.config import settings
from chainattend.core.errors import ChainAttendError, ErrorCode, VersionConflict
from chainattend.core.versioned import swap_row
from chainattend.models.chain import Chain
from chainattend.models.enums import TokenType, TokenStatus
from chainattend.models.token import Token
from chainattend.models.types import utcnow
from chainattend.services import token_store
from chainattend.utils.hashing import derive_challenge_code, hash_code, verify_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeIssued:
    code: str
    holder_id: str
    expires_at: datetime
    expires_in: int


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


async def request_challenge(
    db: AsyncSession,
    *,
    session_id: str,
    chain_id: str,
    token_id: str,
    scanner_id: str,
    now: Optional[datetime] = None,
) -> ChallengeIssued:
    now = now or utcnow()
    token = await token_store.get_token(db, session_id, token_id)
    chain = (
        await db.execute(
            select(Chain)
            .where(Chain.session_id == session_id)
            .where(Chain.chain_id == chain_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if token is None or chain is None:
        raise ChainAttendError(ErrorCode.NOT_FOUND, "Token or chain not found")
    if token.status is TokenStatus.USED:
        raise ChainAttendError(ErrorCode.TOKEN_USED, "Token already used; scan the holder's new code")
    if token.status is not TokenStatus.ACTIVE or token.is_expired(now):
        raise ChainAttendError(ErrorCode.TOKEN_EXPIRED, "Token expired; ask the holder to refresh")
    if token.type is not TokenType.CHAIN or token.chain_id != chain_id:
        raise ChainAttendError(ErrorCode.INVALID_TOKEN, "Token does not belong to this chain")
    if token.holder_id == scanner_id:
        raise ChainAttendError(ErrorCode.SELF_SCAN, "You cannot scan your own code")

    code = derive_challenge_code(token_id, scanner_id, epoch_ms(now))
    expires_at = now + timedelta(seconds=settings.CHALLENGE_TTL_SECONDS)
    holder_id = token.holder_id

    # Version is left alone so the holder's displayed ETag stays valid
    try:
        await swap_row(
            db,
            token,
            {
                "challenge_scanner_id": scanner_id,
                "challenge_code_hash": hash_code(code),
                "challenge_expires_at": expires_at,
            },
            bump=False,
            where=[Token.status == TokenStatus.ACTIVE],
        )
        await db.commit()
    except VersionConflict:
        await db.rollback()
        raise ChainAttendError(ErrorCode.TOKEN_USED, "Token was consumed while issuing the challenge")

    logger.debug("Challenge issued on token %s for scanner %s", token_id[:8], scanner_id)
    return ChallengeIssued(
        code=code,
        holder_id=holder_id,
        expires_at=expires_at,
        expires_in=settings.CHALLENGE_TTL_SECONDS,
    )


def validate_challenge(token: Token, entered_code: str, requester_id: str, now: datetime) -> str:
    """Check a submitted code against the token's pending challenge.

    Returns the pending scanner id, who becomes the next holder.
    """
    if not token.challenge_scanner_id or not token.challenge_code_hash:
        raise ChainAttendError(ErrorCode.NO_PENDING_CHALLENGE, "No pending challenge; the scanner must request one first")
    if token.challenge_expires_at is None or token.challenge_expires_at <= now:
        raise ChainAttendError(ErrorCode.CHALLENGE_EXPIRED, "Challenge expired; the scanner must request a new one")
    if not verify_code(entered_code, token.challenge_code_hash):
        raise ChainAttendError(ErrorCode.INVALID_CHALLENGE, "Challenge code does not match")
    if token.holder_id != requester_id:
        raise ChainAttendError(ErrorCode.NOT_HOLDER, "Only the current holder can submit the code")
    return token.challenge_scanner_id
