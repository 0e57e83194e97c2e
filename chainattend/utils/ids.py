import secrets


def new_token_id() -> str:
    # 32 random bytes, base64url without padding
    return secrets.token_urlsafe(32)


def new_chain_id() -> str:
    return secrets.token_urlsafe(16)


def new_session_id() -> str:
    return secrets.token_urlsafe(12)


def new_snapshot_id() -> str:
    return secrets.token_urlsafe(12)
