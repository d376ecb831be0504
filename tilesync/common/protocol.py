"""Websocket wire protocol.

Every frame is a JSON object tagged by ``kind``.  Inbound frames are parsed
through a discriminated union before any engine or coordinator code sees
them; pydantic errors surface as ``tilesync.common.errors.ValidationError``.
"""

from __future__ import annotations

import json
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from tilesync.common.errors import ValidationError
from tilesync.common.types import Signal
from tilesync.engine.checksum import checksum
from tilesync.engine.state import Board, FallingTile, NewTile, Snapshot, Tile, TileChangeSet


class CellModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: int
    y: int


class TileModel(BaseModel):
    id: str
    letter: str = Field(min_length=1, max_length=1)
    points: int = Field(ge=0)
    x: int = Field(ge=0)
    y: int = Field(ge=0)


class BoardModel(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    tiles: List[List[TileModel]]

    @model_validator(mode="after")
    def _check_shape(self) -> BoardModel:
        if len(self.tiles) != self.height:
            raise ValueError(f"expected {self.height} rows, got {len(self.tiles)}")
        for y, row in enumerate(self.tiles):
            if len(row) != self.width:
                raise ValueError(f"row {y} has {len(row)} tiles, expected {self.width}")
            for x, tile in enumerate(row):
                if (tile.x, tile.y) != (x, y):
                    raise ValueError(f"tile {tile.id} claims ({tile.x}, {tile.y}) but sits at ({x}, {y})")
        return self


class FallingTileModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tile_id: str
    from_: CellModel = Field(alias="from")
    to: CellModel


class NewTileModel(BaseModel):
    id: str
    position: CellModel
    letter: str = Field(min_length=1, max_length=1)
    points: int = Field(ge=0)


# Client -> server


class ClearMessage(BaseModel):
    kind: Literal["clear"] = "clear"
    positions: List[CellModel] = Field(min_length=1)
    tile_ids: Optional[List[str]] = None


class ResyncRequestMessage(BaseModel):
    kind: Literal["resync_request"] = "resync_request"


class TelemetryMessage(BaseModel):
    kind: Literal["telemetry"] = "telemetry"
    signal: Signal
    value: float = Field(ge=0)


class MismatchReportMessage(BaseModel):
    kind: Literal["mismatch_report"] = "mismatch_report"
    local_checksum: str
    received_checksum: str
    sequence_number: int


ClientMessage = Annotated[
    Union[ClearMessage, ResyncRequestMessage, TelemetryMessage, MismatchReportMessage],
    Field(discriminator="kind"),
]


# Server -> client


class BoardDiffMessage(BaseModel):
    kind: Literal["board_diff"] = "board_diff"
    removed_positions: List[CellModel]
    falling_tiles: List[FallingTileModel]
    new_tiles: List[NewTileModel]
    sequence_number: int = Field(ge=0)
    resulting_checksum: str
    timestamp_ms: int = 0


class FullSnapshotMessage(BaseModel):
    kind: Literal["full_snapshot"] = "full_snapshot"
    board: BoardModel
    sequence_number: int = Field(ge=0)
    checksum: str


class ErrorMessage(BaseModel):
    kind: Literal["error"] = "error"
    code: str
    message: str


ServerMessage = Annotated[
    Union[BoardDiffMessage, FullSnapshotMessage, ErrorMessage],
    Field(discriminator="kind"),
]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def _parse(adapter: TypeAdapter, raw: str | bytes | dict):
    try:
        if isinstance(raw, (str, bytes)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid message: {exc.errors(include_url=False)}") from None


def parse_client_message(raw: str | bytes | dict) -> ClientMessage:
    return _parse(_client_adapter, raw)


def parse_server_message(raw: str | bytes | dict) -> ServerMessage:
    return _parse(_server_adapter, raw)


def dump_message(message: BaseModel) -> dict:
    return message.model_dump(mode="json", by_alias=True)


def encode_message(message: BaseModel) -> str:
    return json.dumps(dump_message(message), separators=(",", ":"))


# Engine <-> wire conversion


def _cell(model: CellModel) -> tuple[int, int]:
    return (model.x, model.y)


def _cell_model(cell: tuple[int, int]) -> CellModel:
    return CellModel(x=cell[0], y=cell[1])


def board_to_model(board: Board) -> BoardModel:
    return BoardModel(
        width=board.width,
        height=board.height,
        tiles=[
            [TileModel(id=t.id, letter=t.letter, points=t.points, x=t.x, y=t.y) for t in row]
            for row in board.tiles
        ],
    )


def board_from_model(model: BoardModel, sequence: int = 0) -> Board:
    rows = tuple(
        tuple(Tile(id=t.id, letter=t.letter, points=t.points, x=t.x, y=t.y) for t in row)
        for row in model.tiles
    )
    return Board(width=model.width, height=model.height, tiles=rows, sequence=sequence)


def changes_to_message(changes: TileChangeSet) -> BoardDiffMessage:
    return BoardDiffMessage(
        removed_positions=[_cell_model(pos) for pos in changes.removed_positions],
        falling_tiles=[
            FallingTileModel(tile_id=f.tile_id, from_=_cell_model(f.source), to=_cell_model(f.target))
            for f in changes.falling_tiles
        ],
        new_tiles=[
            NewTileModel(id=n.id, position=_cell_model(n.position), letter=n.letter, points=n.points)
            for n in changes.new_tiles
        ],
        sequence_number=changes.sequence_number,
        resulting_checksum=changes.resulting_checksum,
        timestamp_ms=changes.timestamp_ms,
    )


def changes_from_message(message: BoardDiffMessage) -> TileChangeSet:
    return TileChangeSet(
        removed_positions=tuple(_cell(c) for c in message.removed_positions),
        falling_tiles=tuple(
            FallingTile(tile_id=f.tile_id, source=_cell(f.from_), target=_cell(f.to))
            for f in message.falling_tiles
        ),
        new_tiles=tuple(
            NewTile(id=n.id, position=_cell(n.position), letter=n.letter, points=n.points)
            for n in message.new_tiles
        ),
        sequence_number=message.sequence_number,
        resulting_checksum=message.resulting_checksum,
        timestamp_ms=message.timestamp_ms,
    )


def snapshot_to_message(snapshot: Snapshot) -> FullSnapshotMessage:
    return FullSnapshotMessage(
        board=board_to_model(snapshot.board),
        sequence_number=snapshot.sequence_number,
        checksum=snapshot.checksum,
    )


def snapshot_from_message(message: FullSnapshotMessage) -> Snapshot:
    board = board_from_model(message.board, sequence=message.sequence_number)
    actual = checksum(board)
    if actual != message.checksum:
        raise ValidationError(
            f"Snapshot seq {message.sequence_number} checksum {message.checksum} "
            f"does not match its board ({actual})"
        )
    return Snapshot(board=board, sequence_number=message.sequence_number, checksum=actual)
