import asyncio
from dataclasses import replace

import pytest

from tilesync.common.config import Settings
from tilesync.common.constants import RESYNC_BACKOFF, RESYNC_MAX_RETRIES, RESYNC_TIMEOUT_SECONDS
from tilesync.common.errors import UnrecoverableDesync
from tilesync.common.protocol import changes_to_message, dump_message, snapshot_to_message
from tilesync.common.types import Counter, DesyncKind, Signal, SyncStatus
from tilesync.engine.checksum import checksum
from tilesync.engine.store import BoardStore
from tilesync.monitor.events import CounterIncrement, DesyncEvent, MetricSample
from tilesync.sync.observer import ObserverSession, run_resync_timer


class AcceptAll:
    def is_valid_word(self, word: str) -> bool:
        return True


class RecordingRecorder:
    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events if isinstance(e, DesyncEvent)]


def _setup(**session_kwargs):
    store = BoardStore(AcceptAll(), seed=5, min_words=3)
    board_id = store.create_board().board_id
    sent = []
    recorder = RecordingRecorder()
    session = ObserverSession(
        store.snapshot(board_id), sent.append, recorder=recorder, **session_kwargs
    )
    return store, board_id, session, sent, recorder


def test_observer_tracks_authority_over_many_diffs():
    store, board_id, session, sent, recorder = _setup()
    store.subscribe(board_id, lambda changes: session.handle(dump_message(changes_to_message(changes))))
    for pos in [(0, 0), (1, 1), (2, 2), (3, 3), (4, 4), (2, 0)]:
        store.submit_clear(board_id, [pos, (pos[0], 4)] if pos[1] != 4 else [pos])

    assert session.status == SyncStatus.SYNCED
    assert session.sequence == 6
    assert session.applied == 6
    assert checksum(session.board) == checksum(store.get(board_id).board)
    assert sent == []
    assert recorder.kinds() == []


def test_dropped_diff_is_recovered_by_snapshot():
    store, board_id, session, sent, recorder = _setup()
    first = store.submit_clear(board_id, [(0, 0)])
    second = store.submit_clear(board_id, [(1, 0)])

    assert not session.handle(dump_message(changes_to_message(second)))
    assert session.status == SyncStatus.AWAITING_SNAPSHOT
    assert sent == [{"kind": "resync_request"}]
    # The late diff is ignored while a snapshot is pending.
    assert not session.handle(dump_message(changes_to_message(first)))
    assert len(sent) == 1

    assert session.handle(dump_message(snapshot_to_message(store.snapshot(board_id))))
    assert session.status == SyncStatus.SYNCED
    assert session.sequence == 2
    assert session.board == store.get(board_id).board
    assert recorder.kinds() == [DesyncKind.SEQUENCE_GAP]


def test_checksum_mismatch_triggers_resync():
    store, board_id, session, sent, recorder = _setup()
    changes = store.submit_clear(board_id, [(2, 2)])
    tampered = replace(changes, resulting_checksum="f" * 64)

    assert session.handle(dump_message(changes_to_message(tampered)))
    assert session.status == SyncStatus.AWAITING_SNAPSHOT
    assert sent == [{"kind": "resync_request"}]
    assert recorder.kinds() == [DesyncKind.CHECKSUM_MISMATCH]

    assert session.handle(dump_message(snapshot_to_message(store.snapshot(board_id))))
    assert session.status == SyncStatus.SYNCED


def test_diff_for_diverged_board_is_rejected():
    store, board_id, session, sent, recorder = _setup()
    changes = store.submit_clear(board_id, [(3, 3)])
    session.on_diff(changes)
    bogus = replace(changes, sequence_number=2)

    assert not session.on_diff(bogus)
    assert session.status == SyncStatus.AWAITING_SNAPSHOT
    assert recorder.kinds() == [DesyncKind.DIFF_REJECTED]
    assert len(sent) == 1


def test_latency_is_sampled_from_diff_timestamp():
    store, board_id, session, _, recorder = _setup(wall_clock=lambda: 10.0)
    changes = replace(store.submit_clear(board_id, [(0, 1)]), timestamp_ms=9_950)
    session.on_diff(changes)
    assert MetricSample(Signal.BOARD_LATENCY, 50.0) in recorder.events


def test_malformed_frames_are_counted_and_ignored():
    store, board_id, session, sent, recorder = _setup()
    message = dump_message(snapshot_to_message(store.snapshot(board_id)))
    message["checksum"] = "0" * 64

    assert not session.handle(message)
    assert not session.handle('{"kind": "mystery"}')
    assert not session.handle({"kind": "error", "code": "x", "message": "y"})
    assert recorder.events.count(CounterIncrement(Counter.VALIDATION_FAILURES)) == 2
    assert session.status == SyncStatus.SYNCED
    assert sent == []


def test_resync_timer_surfaces_unrecoverable_desync():
    _, _, session, sent, _ = _setup(timeout=0.01, max_retries=1, backoff=1.0)
    session.coordinator.trigger(DesyncKind.SEQUENCE_GAP)

    async def run():
        await asyncio.wait_for(run_resync_timer(session, interval=0.005), timeout=2.0)

    with pytest.raises(UnrecoverableDesync):
        asyncio.run(run())
    assert session.status == SyncStatus.FAILED
    assert len(sent) == 2


def test_resync_timer_stops_when_session_closes():
    _, _, session, _, _ = _setup()

    async def run():
        task = asyncio.create_task(run_resync_timer(session, interval=0.005))
        await asyncio.sleep(0.02)
        session.close()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(run())
    assert session.status == SyncStatus.CLOSED


def test_session_resync_policy_defaults_to_constants():
    _, _, session, _, _ = _setup()
    coordinator = session.coordinator
    assert coordinator.timeout == RESYNC_TIMEOUT_SECONDS
    assert coordinator.max_retries == RESYNC_MAX_RETRIES
    assert coordinator.backoff == RESYNC_BACKOFF
    assert not hasattr(Settings(), "resync_timeout_seconds")
