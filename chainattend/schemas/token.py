from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from chainattend.models.enums import TokenType


class TokenResponse(BaseModel):
    """What a device renders as a QR code."""
    session_id: str
    token_id: str
    type: TokenType
    chain_id: Optional[str]
    holder_id: Optional[str]
    seq: int
    expires_at: datetime
    etag: str

    model_config = {"from_attributes": True}
