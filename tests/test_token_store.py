from datetime import timedelta

import pytest

from chainattend.core.errors import ErrorCode, VersionConflict
from chainattend.core.versioned import Versioned, compare_and_swap, parse_etag
from chainattend.models.enums import TokenType, TokenStatus
from chainattend.models.token import Token
from chainattend.services import token_store


async def test_create_chain_token_requires_chain_and_holder(db, now):
    with pytest.raises(ValueError):
        await token_store.create_token(db, session_id="s1", token_type=TokenType.CHAIN, ttl_seconds=20, now=now)


async def test_standalone_token_rejects_holder(db, now):
    with pytest.raises(ValueError):
        await token_store.create_token(
            db, session_id="s1", token_type=TokenType.LATE_ENTRY, ttl_seconds=60, holder_id="alice", now=now,
        )


async def test_create_and_get(db, now):
    token = await token_store.create_token(
        db, session_id="s1", token_type=TokenType.CHAIN, chain_id="c1", holder_id="alice", ttl_seconds=20, now=now,
    )
    await db.commit()

    loaded = await token_store.get_token(db, "s1", token.token_id)
    assert loaded.holder_id == "alice"
    assert loaded.status is TokenStatus.ACTIVE
    assert loaded.expires_at == now + timedelta(seconds=20)
    assert loaded.etag == "1"
    assert len(token.token_id) >= 43
    assert await token_store.get_token(db, "s2", token.token_id) is None


async def test_conditional_replace_wins_once(db, now):
    token = await token_store.create_token(
        db, session_id="s1", token_type=TokenType.CHAIN, chain_id="c1", holder_id="alice", ttl_seconds=20, now=now,
    )
    await db.commit()
    token_id = token.token_id

    new_version = await token_store.conditional_replace(db, token, 1, status=TokenStatus.USED)
    await db.commit()
    assert new_version == 2
    assert token.status is TokenStatus.USED

    with pytest.raises(VersionConflict) as exc:
        await token_store.conditional_replace(db, token, 1, status=TokenStatus.EXPIRED)
    assert exc.value.code is ErrorCode.VERSION_CONFLICT
    await db.rollback()

    stored = await token_store.get_token(db, "s1", token_id)
    assert stored.status is TokenStatus.USED
    assert stored.version == 2


async def test_compare_and_swap_extra_guard(db, now):
    token = await token_store.create_token(
        db, session_id="s1", token_type=TokenType.CHAIN, chain_id="c1", holder_id="alice", ttl_seconds=20, now=now,
    )
    await db.commit()
    keys = {"session_id": "s1", "token_id": token.token_id}

    # version matches but the token is already past expiry
    with pytest.raises(VersionConflict):
        await compare_and_swap(
            db, Token, keys, 1, {"status": TokenStatus.USED},
            where=[Token.expires_at > now + timedelta(minutes=1)],
        )
    await db.rollback()

    assert await compare_and_swap(db, Token, keys, 1, {"challenge_scanner_id": "bob"}, bump=False) == 1
    await db.commit()
    assert (await token_store.get_token(db, "s1", keys["token_id"])).version == 1


async def test_delete_and_live_chain_token(db, now):
    first = await token_store.create_token(
        db, session_id="s1", token_type=TokenType.CHAIN, chain_id="c1", holder_id="alice", ttl_seconds=20, now=now,
    )
    await db.commit()
    assert (await token_store.live_chain_token(db, "s1", "c1", now)).token_id == first.token_id
    assert await token_store.live_chain_token(db, "s1", "c1", now + timedelta(seconds=20)) is None

    assert await token_store.delete_token(db, "s1", first.token_id) is True
    await db.commit()
    assert await token_store.delete_token(db, "s1", first.token_id) is False
    assert await token_store.list_tokens(db, Token.session_id == "s1") == []


def test_parse_etag_forms():
    assert parse_etag("3") == 3
    assert parse_etag('"3"') == 3
    assert parse_etag('W/"7"') == 7
    assert parse_etag(4) == 4
    with pytest.raises(VersionConflict):
        parse_etag("abc")


async def test_versioned_swap(db, now):
    token = await token_store.create_token(
        db, session_id="s1", token_type=TokenType.CHAIN, chain_id="c1", holder_id="alice", ttl_seconds=20, now=now,
    )
    await db.commit()

    snapshot = Versioned.of(token)
    assert snapshot.etag == "1"
    swapped = await snapshot.swap(db, {"seq": 4})
    await db.commit()
    assert (swapped.version, token.seq) == (2, 4)

    with pytest.raises(VersionConflict):
        await snapshot.swap(db, {"seq": 5})
    await db.rollback()
