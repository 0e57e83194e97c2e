from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from chainattend.models.enums import ChainPhase, TokenType


class GpsCoordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None


class ScanMetadata(BaseModel):
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    bssid: Optional[str] = None
    gps: Optional[GpsCoordinates] = None


class ChallengeRequest(BaseModel):
    session_id: str
    chain_id: str
    token_id: str
    metadata: ScanMetadata = Field(default_factory=ScanMetadata)


class ChallengeResponse(BaseModel):
    challenge_code: str  # read out to the holder, who submits it
    holder_id: str
    expires_at: datetime
    expires_in: int
    warning: Optional[str] = None


class ChainScanRequest(BaseModel):
    session_id: str
    token_id: str
    etag: str
    challenge_code: str = Field(..., min_length=1, max_length=12)
    metadata: ScanMetadata = Field(default_factory=ScanMetadata)


class ChainScanResponse(BaseModel):
    chain_id: str
    phase: ChainPhase
    previous_holder: str
    new_holder: str
    seq: int
    token_id: str
    etag: str
    warning: Optional[str] = None


class WindowScanRequest(BaseModel):
    session_id: str
    token_id: str
    kind: TokenType
    metadata: ScanMetadata = Field(default_factory=ScanMetadata)


class WindowScanResponse(BaseModel):
    student_id: str
    kind: TokenType
    recorded: bool  # False on a repeat scan
    warning: Optional[str] = None
