from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

from chainattend.models.enums import ChainPhase, ChainState


class SeedRequest(BaseModel):
    phase: ChainPhase
    count: int = 1


class ChainResponse(BaseModel):
    session_id: str
    chain_id: str
    phase: ChainPhase
    seed_index: int
    state: ChainState
    last_holder: Optional[str]
    last_seq: int
    last_at: datetime
    created_at: datetime
    completed_at: Optional[datetime]
    snapshot_id: Optional[str] = None

    model_config = {"from_attributes": True}


class ChainHistoryResponse(BaseModel):
    chain_id: str
    sequence: int
    from_holder: str
    to_holder: str
    scanned_at: datetime
    phase: ChainPhase

    model_config = {"from_attributes": True}


class SetHolderRequest(BaseModel):
    student_id: str


class SetHolderResponse(BaseModel):
    chain_id: str
    previous_holder: Optional[str]
    new_holder: str
    seq: int


class CloseChainResponse(BaseModel):
    chain_id: str
    final_holder: Optional[str]
    already_closed: bool


class StalledRequest(BaseModel):
    phase: Optional[ChainPhase] = None


class StalledResponse(BaseModel):
    chain_ids: List[str]
