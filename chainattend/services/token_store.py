from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.core.versioned import swap_row
from chainattend.models.enums import TokenType, TokenStatus
from chainattend.models.token import Token
from chainattend.models.types import utcnow
from chainattend.utils.ids import new_token_id


async def create_token(
    db: AsyncSession,
    *,
    session_id: str,
    token_type: TokenType,
    ttl_seconds: int,
    chain_id: Optional[str] = None,
    holder_id: Optional[str] = None,
    seq: int = 0,
    single_use: bool = True,
    now: Optional[datetime] = None,
) -> Token:
    """Insert a fresh ACTIVE token. Flushes, never commits."""
    if token_type is TokenType.CHAIN:
        if not chain_id or not holder_id:
            raise ValueError("chain tokens need a chain_id and a holder_id")
    elif chain_id is not None or holder_id is not None:
        raise ValueError(f"{token_type.value} tokens carry no chain or holder")

    now = now or utcnow()
    token = Token(
        session_id=session_id,
        token_id=new_token_id(),
        type=token_type,
        chain_id=chain_id,
        holder_id=holder_id,
        seq=seq,
        expires_at=now + timedelta(seconds=ttl_seconds),
        status=TokenStatus.ACTIVE,
        single_use=single_use,
        version=1,
        created_at=now,
    )
    db.add(token)
    await db.flush()
    return token


async def get_token(db: AsyncSession, session_id: str, token_id: str) -> Optional[Token]:
    result = await db.execute(
        select(Token)
        .where(Token.session_id == session_id)
        .where(Token.token_id == token_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def conditional_replace(db: AsyncSession, token: Token, expected_version: int, **changes) -> int:
    """Write ``changes`` only if the stored version is still ``expected_version``.

    Raises VersionConflict otherwise. Returns the new version.
    """
    return await swap_row(db, token, changes, expected=expected_version)


async def delete_token(db: AsyncSession, session_id: str, token_id: str) -> bool:
    result = await db.execute(
        delete(Token)
        .where(Token.session_id == session_id)
        .where(Token.token_id == token_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def delete_chain_tokens(db: AsyncSession, session_id: str, chain_id: str) -> int:
    result = await db.execute(
        delete(Token)
        .where(Token.session_id == session_id)
        .where(Token.chain_id == chain_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def list_tokens(db: AsyncSession, *criteria) -> List[Token]:
    result = await db.execute(
        select(Token)
        .where(*criteria)
        .order_by(Token.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def live_chain_token(db: AsyncSession, session_id: str, chain_id: str, now: Optional[datetime] = None) -> Optional[Token]:
    """The chain's ACTIVE, unexpired token, if any (newest wins)."""
    now = now or utcnow()
    result = await db.execute(
        select(Token)
        .where(Token.session_id == session_id)
        .where(Token.chain_id == chain_id)
        .where(Token.status == TokenStatus.ACTIVE)
        .where(Token.expires_at > now)
        .order_by(Token.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
