import pytest

from tilesync.common.errors import UnrecoverableDesync
from tilesync.common.types import Counter, DesyncKind, Severity, SyncStatus
from tilesync.monitor.events import CounterIncrement, DesyncEvent
from tilesync.sync.coordinator import ResyncCoordinator


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingRecorder:
    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def desyncs(self, kind=None):
        return [
            e for e in self.events if isinstance(e, DesyncEvent) and (kind is None or e.kind == kind)
        ]


def _coordinator(**kwargs):
    sent = []
    recorder = RecordingRecorder()
    clock = FakeClock()
    kwargs.setdefault("timeout", 5.0)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("backoff", 2.0)
    coordinator = ResyncCoordinator(
        lambda: sent.append(clock.now), recorder=recorder, clock=clock, **kwargs
    )
    return coordinator, sent, recorder, clock


def _advance_to(coordinator, seq):
    for n in range(coordinator.last_known_sequence + 1, seq + 1):
        assert coordinator.check_sequence(n)
        coordinator.advance(n)


def test_in_order_diffs_are_accepted():
    coordinator, sent, recorder, _ = _coordinator()
    _advance_to(coordinator, 3)
    assert coordinator.status == SyncStatus.SYNCED
    assert coordinator.last_known_sequence == 3
    assert sent == []
    assert recorder.events == []


def test_gap_requests_exactly_one_snapshot():
    coordinator, sent, recorder, _ = _coordinator()
    _advance_to(coordinator, 2)
    assert not coordinator.check_sequence(4)
    assert coordinator.status == SyncStatus.AWAITING_SNAPSHOT
    # Further triggers while awaiting are coalesced.
    assert not coordinator.check_sequence(5)
    assert not coordinator.trigger(DesyncKind.CHECKSUM_MISMATCH, record=False)
    assert not coordinator.trigger(DesyncKind.SEQUENCE_GAP)
    assert len(sent) == 1
    assert coordinator.requests_sent == 1
    gap = recorder.desyncs(DesyncKind.SEQUENCE_GAP)[0]
    assert gap.severity == Severity.HIGH
    assert gap.detail["expected"] == 3
    assert gap.detail["received"] == 4
    assert recorder.events.count(CounterIncrement(Counter.RESYNC_REQUESTS)) == 1


def test_regression_is_treated_like_a_gap():
    coordinator, sent, recorder, _ = _coordinator()
    _advance_to(coordinator, 3)
    assert not coordinator.check_sequence(2)
    assert coordinator.status == SyncStatus.AWAITING_SNAPSHOT
    assert len(recorder.desyncs(DesyncKind.SEQUENCE_REGRESSION)) == 1
    assert len(sent) == 1


def test_older_snapshot_is_discarded_while_awaiting():
    coordinator, sent, _, _ = _coordinator()
    _advance_to(coordinator, 5)
    coordinator.check_sequence(7)

    assert not coordinator.on_snapshot(3)
    assert coordinator.status == SyncStatus.AWAITING_SNAPSHOT
    assert coordinator.last_known_sequence == 5

    assert coordinator.on_snapshot(7)
    assert coordinator.status == SyncStatus.SYNCED
    assert coordinator.last_known_sequence == 7
    assert coordinator.pending is None
    assert coordinator.check_sequence(8)


def test_snapshot_at_mismatch_sequence_is_accepted():
    coordinator, _, _, _ = _coordinator()
    _advance_to(coordinator, 4)
    coordinator.trigger(DesyncKind.CHECKSUM_MISMATCH, record=False)
    assert coordinator.on_snapshot(4)
    assert coordinator.status == SyncStatus.SYNCED


def test_snapshot_not_newer_than_last_snapshot_is_ignored():
    coordinator, _, _, _ = _coordinator(initial_sequence=6)
    assert not coordinator.on_snapshot(6)
    assert coordinator.on_snapshot(9)
    assert not coordinator.on_snapshot(9)
    assert coordinator.last_known_sequence == 9


def test_unanswered_request_is_retried_with_backoff():
    coordinator, sent, _, clock = _coordinator()
    coordinator.trigger(DesyncKind.SEQUENCE_GAP)
    assert sent == [0.0]

    clock.now = 4.9
    coordinator.poll()
    assert len(sent) == 1

    clock.now = 5.0
    coordinator.poll()
    assert sent == [0.0, 5.0]
    assert coordinator.pending.deadline == pytest.approx(15.0)

    clock.now = 15.0
    coordinator.poll()
    assert coordinator.pending.deadline == pytest.approx(35.0)
    assert coordinator.pending.attempts == 3


def test_exhausted_retries_are_terminal():
    coordinator, sent, recorder, clock = _coordinator(max_retries=2, timeout=1.0, backoff=1.0)
    coordinator.trigger(DesyncKind.SEQUENCE_GAP)
    clock.now = 1.0
    coordinator.poll()
    clock.now = 2.0
    coordinator.poll()
    assert len(sent) == 3

    clock.now = 3.0
    with pytest.raises(UnrecoverableDesync):
        coordinator.poll()
    assert coordinator.status == SyncStatus.FAILED
    exhausted = recorder.desyncs(DesyncKind.RESYNC_EXHAUSTED)
    assert len(exhausted) == 1
    assert exhausted[0].severity == Severity.CRITICAL

    with pytest.raises(UnrecoverableDesync):
        coordinator.check_sequence(1)
    with pytest.raises(UnrecoverableDesync):
        coordinator.on_snapshot(10)


def test_close_clears_pending_request():
    coordinator, sent, _, clock = _coordinator()
    coordinator.trigger(DesyncKind.SEQUENCE_GAP)
    coordinator.close()
    assert coordinator.pending is None
    assert coordinator.status == SyncStatus.CLOSED
    clock.now = 100.0
    coordinator.poll()
    assert len(sent) == 1
    assert not coordinator.check_sequence(1)
    assert not coordinator.on_snapshot(50)
