"""Tests for the watchdog-backed change source."""

import threading
import time

from watchdog.events import DirCreatedEvent, FileDeletedEvent, FileMovedEvent, FileOpenedEvent

from dir_mirror import ChangeEvent, WatchdogSource, _QueueingEventHandler


def test_handler_splits_moves_into_two_events():
    source = WatchdogSource()
    handler = _QueueingEventHandler(source._queue)

    handler.dispatch(FileMovedEvent("/s/old.txt", "/s/new.txt"))

    assert source._queue.get_nowait() == ChangeEvent("/s/old.txt", "moved_from")
    assert source._queue.get_nowait() == ChangeEvent("/s/new.txt", "moved_to")


def test_handler_skips_open_events():
    source = WatchdogSource()
    handler = _QueueingEventHandler(source._queue)

    handler.dispatch(FileOpenedEvent("/s/a.txt"))
    handler.dispatch(DirCreatedEvent("/s/dir"))

    assert source._queue.get_nowait() == ChangeEvent("/s/dir", "created")
    assert source._queue.empty()


def test_events_within_latency_form_one_batch():
    source = WatchdogSource(latency=0.5)
    handler = _QueueingEventHandler(source._queue)
    for name in ("a", "b", "c"):
        handler.dispatch(FileDeletedEvent(f"/s/{name}"))

    batch = next(source.batches())

    assert [e.path for e in batch] == ["/s/a", "/s/b", "/s/c"]
    source.stop()


def test_stop_ends_iteration():
    source = WatchdogSource(latency=0.1)
    batches = []
    consumer = threading.Thread(target=lambda: batches.extend(source.batches()), daemon=True)
    consumer.start()

    source.stop()
    consumer.join(timeout=5)

    assert not consumer.is_alive()
    assert batches == []


def test_polling_observer_reports_new_file(roots):
    src, _ = roots
    source = WatchdogSource(latency=0.1, polling=True)
    seen = []

    def consume():
        for batch in source.batches():
            seen.extend(batch)
            if any(e.path == str(src / "a.txt") for e in seen):
                return

    source.start(str(src))
    try:
        time.sleep(0.5)
        (src / "a.txt").write_text("x")
        consumer = threading.Thread(target=consume, daemon=True)
        consumer.start()
        consumer.join(timeout=10)
    finally:
        source.stop()

    assert any(e.path == str(src / "a.txt") for e in seen)
