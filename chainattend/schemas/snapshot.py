from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

from chainattend.models.enums import ChainState
from chainattend.schemas.chain import ChainResponse, ChainHistoryResponse


class SnapshotRequest(BaseModel):
    count: int = 3
    notes: Optional[str] = None


class SnapshotResponse(BaseModel):
    session_id: str
    snapshot_id: str
    snapshot_index: int
    captured_at: datetime
    online_students: int
    chains_created: int
    notes: Optional[str]

    model_config = {"from_attributes": True}


class TakeSnapshotResponse(BaseModel):
    snapshot: SnapshotResponse
    chains: List[ChainResponse]


class SnapshotComparisonResponse(BaseModel):
    first: SnapshotResponse
    second: SnapshotResponse
    first_students: List[str]
    second_students: List[str]
    new_students: List[str]     # seen only in the second
    absent_students: List[str]  # seen only in the first
    in_both: List[str]
    seconds_between: float


class ChainTraceResponse(BaseModel):
    chain_id: str
    state: ChainState
    last_holder: Optional[str]
    last_seq: int
    hops: List[ChainHistoryResponse]
