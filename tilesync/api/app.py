from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from tilesync.api.models import AlertResponse, BoardSummary, ClearRequest, CreateBoardResponse
from tilesync.common.config import settings
from tilesync.common.errors import (
    GenerationFailure,
    StaleMutationError,
    TileSyncError,
    UnknownBoardError,
    ValidationError,
)
from tilesync.common.protocol import (
    BoardDiffMessage,
    ClearMessage,
    ErrorMessage,
    FullSnapshotMessage,
    MismatchReportMessage,
    ResyncRequestMessage,
    TelemetryMessage,
    changes_to_message,
    dump_message,
    parse_client_message,
    snapshot_to_message,
)
from tilesync.common.types import Counter, DesyncKind, Severity
from tilesync.engine.state import TileChangeSet
from tilesync.engine.store import BoardStore
from tilesync.engine.words import WordListOracle
from tilesync.monitor.events import CounterIncrement, DesyncEvent, MetricSample
from tilesync.monitor.monitor import SyncMonitor

app = FastAPI(title="TileSync")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)

OBSERVER_SEND_TIMEOUT = 1.0

store: BoardStore | None = None
monitor: SyncMonitor | None = None
store_lock = asyncio.Lock()


@dataclass
class ObserverConnection:
    ws: WebSocket
    queue: asyncio.Queue[Dict[str, object]]
    token: int
    task: asyncio.Task | None = None
    closed: bool = False


# Observer WS connections by board id
observers: Dict[str, Dict[int, ObserverConnection]] = {}
snapshot_task: asyncio.Task | None = None


def _get_store() -> BoardStore:
    assert store is not None
    return store


def _get_monitor() -> SyncMonitor:
    assert monitor is not None
    return monitor


def _check_api_key(provided: str | None) -> None:
    if settings.api_key and provided != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _http_error(exc: TileSyncError) -> HTTPException:
    if isinstance(exc, StaleMutationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, UnknownBoardError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, GenerationFailure):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _error_code(exc: TileSyncError) -> str:
    if isinstance(exc, StaleMutationError):
        return "stale_mutation"
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, UnknownBoardError):
        return "unknown_board"
    return "server_error"


@app.on_event("startup")
async def _startup() -> None:
    global store, monitor, snapshot_task, store_lock
    store_lock = asyncio.Lock()
    monitor = SyncMonitor(
        interval=settings.monitor_interval_seconds,
        window_size=settings.metric_window,
        short_window_size=settings.short_metric_window,
        event_capacity=settings.event_capacity,
        alert_capacity=settings.alert_capacity,
    )
    oracle = WordListOracle.from_path(settings.word_list_path)
    store = BoardStore(
        oracle,
        seed=settings.random_seed,
        width=settings.board_width,
        height=settings.board_height,
        min_words=settings.min_words,
        max_generation_attempts=settings.max_generation_attempts,
        max_word_length=settings.max_word_length,
        recorder=monitor,
    )
    if settings.enable_monitor:
        monitor.start()
    else:
        logger.warning("Sync monitor disabled via TILESYNC_ENABLE_MONITOR")
    if settings.snapshot_broadcast_seconds > 0:
        snapshot_task = asyncio.create_task(snapshot_loop(settings.snapshot_broadcast_seconds))


@app.on_event("shutdown")
async def _shutdown() -> None:
    global snapshot_task
    if snapshot_task is not None:
        snapshot_task.cancel()
        snapshot_task = None
    if monitor is not None:
        monitor.stop()


def _queue_message(
    board_id: str, conn: ObserverConnection, message: Dict[str, object]
) -> bool:
    try:
        conn.queue.put_nowait(message)
        return True
    except asyncio.QueueFull:
        # The observer sees the dropped diff as a sequence gap and resyncs.
        logger.warning(
            "Observer queue full on board %s (connection %s); dropping %s",
            board_id,
            conn.token,
            message.get("kind"),
        )
        return False


def _diff_listener(board_id: str, conn: ObserverConnection):
    def listener(changes: TileChangeSet) -> None:
        _queue_message(board_id, conn, dump_message(changes_to_message(changes)))

    return listener


async def _send_observer_message(ws: WebSocket, message: Dict[str, object]) -> bool:
    try:
        await asyncio.wait_for(ws.send_json(message), timeout=OBSERVER_SEND_TIMEOUT)
        return True
    except Exception:
        logger.exception("Failed to send observer update")
        return False


async def _drop_observer(board_id: str, conn: ObserverConnection) -> None:
    async with store_lock:
        _get_store().unsubscribe(board_id, conn.token)
        conns = observers.get(board_id)
        if conns:
            conns.pop(conn.token, None)
            if not conns:
                observers.pop(board_id, None)


async def _pump_observer(board_id: str, conn: ObserverConnection) -> None:
    while True:
        try:
            message = await conn.queue.get()
        except asyncio.CancelledError:
            break
        if not await _send_observer_message(conn.ws, message):
            _get_monitor().record(CounterIncrement(Counter.CONNECTION_DROPS))
            # Stale observer: stop feeding it and end its receive loop.
            conn.closed = True
            await _drop_observer(board_id, conn)
            try:
                await conn.ws.close()
            except Exception:
                logger.exception("Failed to close stale observer on board %s", board_id)
            break


async def snapshot_loop(interval: float) -> None:
    """Periodically push the authoritative snapshot to every observer."""
    while True:
        await asyncio.sleep(interval)
        board_store = _get_store()
        async with store_lock:
            for board_id, conns in list(observers.items()):
                try:
                    message = dump_message(snapshot_to_message(board_store.snapshot(board_id)))
                except UnknownBoardError:
                    continue
                for conn in list(conns.values()):
                    _queue_message(board_id, conn, message)


@app.post("/boards", response_model=CreateBoardResponse)
async def create_board(x_api_key: str | None = Header(default=None)) -> CreateBoardResponse:
    _check_api_key(x_api_key)
    board_store = _get_store()
    async with store_lock:
        try:
            entry = await asyncio.to_thread(board_store.create_board)
        except GenerationFailure as exc:
            logger.error("Board generation failed: %s", exc)
            raise _http_error(exc) from exc
        snapshot = board_store.snapshot(entry.board_id)
    return CreateBoardResponse(board_id=entry.board_id, snapshot=snapshot_to_message(snapshot))


@app.get("/boards", response_model=List[BoardSummary])
async def list_boards(x_api_key: str | None = Header(default=None)) -> List[BoardSummary]:
    _check_api_key(x_api_key)
    board_store = _get_store()
    async with store_lock:
        entries = list(board_store.boards.values())
    return [
        BoardSummary(
            board_id=entry.board_id,
            width=entry.board.width,
            height=entry.board.height,
            sequence_number=entry.board.sequence,
            observers=len(entry.subscribers),
            mutations=entry.mutations,
            rejected=entry.rejected,
            created_ms=entry.created_ms,
        )
        for entry in entries
    ]


@app.get("/boards/{board_id}", response_model=FullSnapshotMessage)
async def board_snapshot(
    board_id: str, x_api_key: str | None = Header(default=None)
) -> FullSnapshotMessage:
    _check_api_key(x_api_key)
    board_store = _get_store()
    async with store_lock:
        try:
            snapshot = board_store.snapshot(board_id)
        except UnknownBoardError as exc:
            raise _http_error(exc) from exc
    return snapshot_to_message(snapshot)


@app.post("/boards/{board_id}/clear", response_model=BoardDiffMessage)
async def clear_cells(
    board_id: str, req: ClearRequest, x_api_key: str | None = Header(default=None)
) -> BoardDiffMessage:
    _check_api_key(x_api_key)
    try:
        changes = await _submit_clear(board_id, req.positions, req.tile_ids)
    except (ValidationError, UnknownBoardError) as exc:
        raise _http_error(exc) from exc
    return changes_to_message(changes)


async def _submit_clear(board_id: str, positions, tile_ids) -> TileChangeSet:
    board_store = _get_store()
    cells = [(cell.x, cell.y) for cell in positions]
    async with store_lock:
        return board_store.submit_clear(board_id, cells, tile_ids)


@app.delete("/boards/{board_id}")
async def discard_board(
    board_id: str, x_api_key: str | None = Header(default=None)
) -> Dict[str, object]:
    _check_api_key(x_api_key)
    board_store = _get_store()
    async with store_lock:
        try:
            entry = board_store.discard_board(board_id)
        except UnknownBoardError as exc:
            raise _http_error(exc) from exc
        conns = list(observers.pop(board_id, {}).values())
    for conn in conns:
        conn.closed = True
        if conn.task is not None:
            conn.task.cancel()
        try:
            await conn.ws.close()
        except Exception:
            logger.exception("Failed to close observer on discarded board %s", board_id)
    return {"status": "ok", "board_id": board_id, "mutations": entry.mutations}


@app.get("/telemetry")
async def telemetry(x_api_key: str | None = Header(default=None)) -> Dict[str, object]:
    _check_api_key(x_api_key)
    return _get_monitor().export()


@app.post("/telemetry/alerts/{index}/resolve", response_model=AlertResponse)
async def resolve_alert(index: int, x_api_key: str | None = Header(default=None)) -> AlertResponse:
    _check_api_key(x_api_key)
    try:
        alert = _get_monitor().resolve_alert(index)
    except IndexError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown alert") from None
    return AlertResponse(**alert.as_dict())


async def _handle_client_message(board_id: str, conn: ObserverConnection, raw: str) -> None:
    board_monitor = _get_monitor()
    try:
        message = parse_client_message(raw)
    except ValidationError as exc:
        board_monitor.record(CounterIncrement(Counter.VALIDATION_FAILURES))
        _queue_message(board_id, conn, dump_message(ErrorMessage(code="invalid_message", message=str(exc))))
        return
    if isinstance(message, ClearMessage):
        try:
            await _submit_clear(board_id, message.positions, message.tile_ids)
        except (ValidationError, UnknownBoardError) as exc:
            _queue_message(board_id, conn, dump_message(ErrorMessage(code=_error_code(exc), message=str(exc))))
    elif isinstance(message, ResyncRequestMessage):
        async with store_lock:
            try:
                snapshot = _get_store().snapshot(board_id)
            except UnknownBoardError as exc:
                _queue_message(board_id, conn, dump_message(ErrorMessage(code=_error_code(exc), message=str(exc))))
                return
            _queue_message(board_id, conn, dump_message(snapshot_to_message(snapshot)))
    elif isinstance(message, TelemetryMessage):
        board_monitor.record(MetricSample(message.signal, message.value))
    elif isinstance(message, MismatchReportMessage):
        board_monitor.record(
            DesyncEvent(
                kind=DesyncKind.CHECKSUM_MISMATCH,
                severity=Severity.HIGH,
                detail={
                    "board_id": board_id,
                    "sequence_number": message.sequence_number,
                    "local_checksum": message.local_checksum,
                    "received_checksum": message.received_checksum,
                },
            )
        )


@app.websocket("/boards/{board_id}/ws")
async def observe_board(
    ws: WebSocket, board_id: str, key: str | None = None, last_sequence: int | None = None
) -> None:
    _check_api_key(key)
    board_store = _get_store()
    board_monitor = _get_monitor()
    await ws.accept()
    queue: asyncio.Queue[Dict[str, object]] = asyncio.Queue(maxsize=settings.observer_queue_size)
    async with store_lock:
        try:
            snapshot = board_store.snapshot(board_id)
        except UnknownBoardError as exc:
            await ws.send_json(dump_message(ErrorMessage(code="unknown_board", message=str(exc))))
            await ws.close(code=4404)
            return
        conn = ObserverConnection(ws=ws, queue=queue, token=0)
        # Join snapshot goes out before any diff.
        queue.put_nowait(dump_message(snapshot_to_message(snapshot)))
        conn.token = board_store.subscribe(board_id, _diff_listener(board_id, conn))
        observers.setdefault(board_id, {})[conn.token] = conn
    if last_sequence is not None:
        board_monitor.record(CounterIncrement(Counter.RECONNECTION_ATTEMPTS))
        logger.info(
            "Observer rejoined board %s (last seq %s, now %s)",
            board_id,
            last_sequence,
            snapshot.sequence_number,
        )
    conn.task = asyncio.create_task(_pump_observer(board_id, conn))
    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                break
            except Exception:
                if conn.closed:
                    break
                logger.exception("Observer websocket receive failed")
                board_monitor.record(CounterIncrement(Counter.CONNECTION_DROPS))
                break
            await _handle_client_message(board_id, conn, raw)
    finally:
        conn.task.cancel()
        await _drop_observer(board_id, conn)
