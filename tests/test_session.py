"""Tests for the session wiring and the command line entry point."""

import json
import logging
import queue
import threading

import pytest

import dir_mirror
from dir_mirror import (
    ChangeEvent,
    DeletionPolicy,
    MirrorSession,
    SyncConfig,
    WatchSource,
    build_effective_config,
    main,
    parse_args,
)


class ChannelSource(WatchSource):
    """In-memory watch source: tests push batches, the session consumes them."""

    def __init__(self):
        self.root = None
        self.processed = threading.Semaphore(0)
        self._batches = queue.Queue()

    def start(self, root):
        self.root = root

    def push(self, *paths, flags="modified"):
        self._batches.put([ChangeEvent(str(p), flags) for p in paths])

    def batches(self):
        while True:
            batch = self._batches.get()
            if batch is None:
                return
            yield batch
            self.processed.release()

    def wait_processed(self, timeout=5.0):
        assert self.processed.acquire(timeout=timeout)

    def stop(self):
        self._batches.put(None)


class FailingSource(ChannelSource):
    def start(self, root):
        raise OSError("inotify watch limit reached")


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    app_dir = tmp_path / "home" / ".dir_mirror"
    monkeypatch.setattr(dir_mirror, "APP_DIR", app_dir)
    monkeypatch.setattr(dir_mirror, "CONFIG_PATH", app_dir / "config.json")
    yield app_dir

    logger = logging.getLogger(dir_mirror.LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestMirrorSession:
    def test_batches_flow_to_destination(self, roots, test_logger):
        src, dst = roots
        source = ChannelSource()
        session = MirrorSession(SyncConfig(str(src), str(dst)), source=source, logger=test_logger)
        session.start()
        try:
            assert source.root == str(src)
            (src / "a.txt").write_text("hello")
            source.push(src / "a.txt")
            source.wait_processed()
            assert (dst / "a.txt").read_text() == "hello"

            (src / "a.txt").unlink()
            source.push(src / "a.txt", flags="deleted")
            source.wait_processed()
            assert not (dst / "a.txt").exists()
        finally:
            session.stop()
        assert not session.monitor.is_alive()

    def test_initial_check_creates_destination(self, roots, test_logger):
        src, dst = roots
        dest = dst / "new"
        source = ChannelSource()
        session = MirrorSession(SyncConfig(str(src), str(dest)), source=source, logger=test_logger)
        session.start()
        try:
            assert session.monitor.is_ready()
            assert dest.is_dir()
        finally:
            session.stop()

    def test_move_session(self, roots, test_logger):
        src, dst = roots
        source = ChannelSource()
        config = SyncConfig(str(src), str(dst), DeletionPolicy.MOVE)
        session = MirrorSession(config, source=source, logger=test_logger)
        session.start()
        try:
            (src / "b.txt").write_text("b")
            source.push(src / "b.txt", flags="created")
            source.wait_processed()
        finally:
            session.stop()

        assert (dst / "b.txt").read_text() == "b"
        assert not (src / "b.txt").exists()

    def test_watch_start_failure_propagates(self, roots, test_logger):
        src, dst = roots
        session = MirrorSession(SyncConfig(str(src), str(dst)), source=FailingSource(), logger=test_logger)

        with pytest.raises(OSError):
            session.start()
        session.monitor.join(timeout=5)
        assert not session.monitor.is_alive()


class TestEffectiveConfig:
    def test_cli_values(self, isolated_home, roots):
        src, dst = roots
        cfg = build_effective_config(parse_args(["-s", str(src), "-d", str(dst), "-k", "-v", "--ignore", "*.tmp"]))

        assert cfg.source_dir == src
        assert cfg.deletion_policy is DeletionPolicy.KEEP
        assert cfg.verbose
        assert cfg.ignore_patterns == ("*.tmp",)
        assert cfg.check_interval_sec == dir_mirror.DEFAULT_CHECK_INTERVAL_SEC

    def test_saved_values_fill_gaps(self, isolated_home, roots):
        src, dst = roots
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.json").write_text(
            json.dumps({"source": str(src), "dest": str(dst), "check_interval_sec": 5, "deletion_policy": "move"})
        )

        cfg = build_effective_config(parse_args([]))

        assert cfg.dest_dir == dst
        assert cfg.check_interval_sec == 5.0
        assert cfg.deletion_policy is DeletionPolicy.MOVE

    def test_keep_and_move_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["-k", "-m"])


class TestMain:
    def test_missing_source_exits_nonzero(self, isolated_home, tmp_path):
        assert main(["-d", str(tmp_path / "dst")]) == 2

    def test_identical_roots_exit_nonzero(self, isolated_home, roots, tmp_path):
        src, _ = roots
        assert main(["-s", str(src), "-d", str(src) + "/", "--log-dir", str(tmp_path / "logs")]) == 2

    def test_source_not_a_directory(self, isolated_home, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        assert main(["-s", str(f), "-d", str(tmp_path / "dst"), "--log-dir", str(tmp_path / "logs")]) == 2

    def test_watch_failure_exits_one(self, isolated_home, roots, tmp_path, monkeypatch):
        src, dst = roots
        monkeypatch.setattr(dir_mirror, "WatchdogSource", lambda **kwargs: FailingSource())

        assert main(["-s", str(src), "-d", str(dst), "--log-dir", str(tmp_path / "logs")]) == 1
        saved = json.loads((isolated_home / "config.json").read_text())
        assert saved["source"] == str(src)
