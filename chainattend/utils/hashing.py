import hashlib

from passlib.context import CryptContext

code_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def derive_challenge_code(token_id: str, scanner_id: str, epoch_ms: int) -> str:
    """6-digit code, a pure function of (token, scanner, timestamp)."""
    digest = hashlib.sha256(f"{token_id}:{scanner_id}:{epoch_ms}".encode("utf-8")).hexdigest()
    return str(int(digest[:8], 16) % 1_000_000).zfill(6)


def hash_code(code: str) -> str:
    """Salted hash; the plaintext code is never stored"""
    return code_context.hash(code)


def verify_code(entered_code: str, code_hash: str) -> bool:
    if not entered_code or not code_hash:
        return False
    try:
        return code_context.verify(entered_code.strip(), code_hash)
    except ValueError:
        return False
