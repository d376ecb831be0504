from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from tilesync.common.protocol import CellModel, FullSnapshotMessage


class CreateBoardResponse(BaseModel):
    board_id: str
    snapshot: FullSnapshotMessage


class BoardSummary(BaseModel):
    board_id: str
    width: int
    height: int
    sequence_number: int
    observers: int
    mutations: int
    rejected: int
    created_ms: int


class ClearRequest(BaseModel):
    positions: List[CellModel] = Field(min_length=1)
    tile_ids: Optional[List[str]] = None


class AlertResponse(BaseModel):
    type: str
    severity: str
    message: str
    timestamp: float
    data: dict = Field(default_factory=dict)
    resolved: bool
