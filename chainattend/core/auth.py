import enum
from dataclasses import dataclass, field
from typing import FrozenSet

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from chainattend.config import settings

reusable_oauth2 = HTTPBearer()


class Role(str, enum.Enum):
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


@dataclass(frozen=True)
class Identity:
    id: str
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


def identity_from_claims(payload: dict) -> Identity:
    """Build an Identity from decoded JWT claims.

    Accepts either a single ``role`` claim or a ``roles`` list; unknown role
    names are ignored.
    """
    user_id = payload.get("sub")
    if not user_id:
        raise ValueError("token has no subject")
    raw = payload.get("roles") or [payload.get("role")]
    roles = set()
    for name in raw:
        if not name:
            continue
        try:
            roles.add(Role(str(name).upper()))
        except ValueError:
            continue
    return Identity(id=str(user_id), roles=frozenset(roles))


async def get_current_identity(
    token: HTTPAuthorizationCredentials = Depends(reusable_oauth2)
) -> Identity:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
        return identity_from_claims(payload)
    except (JWTError, ValueError):
        raise credentials_exception


async def get_current_teacher(
    identity: Identity = Depends(get_current_identity)
) -> Identity:
    if not identity.has_role(Role.TEACHER):
        raise HTTPException(403, "Teacher role required")
    return identity


async def get_current_student(
    identity: Identity = Depends(get_current_identity)
) -> Identity:
    if not identity.has_role(Role.STUDENT):
        raise HTTPException(403, "Student role required")
    return identity
