# /dir_mirror.py
"""
Dir Mirror (no UI)
- Watches a source folder and replicates every change into a destination folder.
- One-directional: the destination is never read back into the source.
- Metadata preserved: permission bits, timestamps, extended attributes, symlinks as symlinks.
- Destination may come and go (unmounted volume): a monitor thread polls it every
  couple of seconds, recreates it when missing and gates all work on its state.
  Changes seen while the destination is down are dropped, not replayed.
- Deletion policies:
  - mirror (default): removing a source entry removes its copy
  - keep  (-k): destination copies are never removed
  - move  (-m): entries are copied then removed from the source. Anything
    added or changed after the copy stays behind for its own event.
- Ignores OS bookkeeping files (.DS_Store) plus optional gitignore-style patterns.
- Remembers last folders across restarts via ~/.dir_mirror/config.json
- Styled console output:
  - COPY green
  - DELETE red
  - SKIP_DELETE yellow
  - destination READY green, LOST orange
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  python dir_mirror.py -s "/src" -d "/dst" -v
  python dir_mirror.py -s "/src" -d "/Volumes/Backup/src" --keep --check-interval 5
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import errno
import json
import logging
import os
import queue
import shutil
import stat
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

APP_DIR = Path.home() / ".dir_mirror"
CONFIG_PATH = APP_DIR / "config.json"

LOGGER_NAME = "dir_mirror"

DEFAULT_CHECK_INTERVAL_SEC = 2.0
DEFAULT_LATENCY_SEC = 0.3
DEST_ROOT_MODE = 0o755

# Matched as substrings of the path relative to the source root.
BOOKKEEPING_MARKERS = (".DS_Store",)


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[33m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.RED,
    "SKIP_DELETE": Ansi.YELLOW,
    "SKIP_SAFETY": Ansi.RED,
    "READY": Ansi.GREEN,
    "LOST": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "dir_mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, verbose: bool = False) -> logging.Logger:
    """
    Configure the shared logger: plain file handler plus a colorized stdout handler.
    Without verbose the console only shows warnings and errors; the file keeps INFO.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.DEBUG if verbose else logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.DEBUG if verbose else logging.WARNING)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[str] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else os.path.isdir(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

class ConfigError(ValueError):
    """Raised when the roots or options cannot start a session."""


class DeletionPolicy(str, enum.Enum):
    MIRROR = "mirror"
    KEEP = "keep"
    MOVE = "move"


@dataclass(frozen=True)
class SyncConfig:
    source_root: str
    dest_root: str
    deletion_policy: DeletionPolicy = DeletionPolicy.MIRROR
    verbose: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "deletion_policy", DeletionPolicy(self.deletion_policy))
        if self.source_root == self.dest_root:
            raise ConfigError(f"Source and destination must be different: {self.source_root}")


@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    dest_dir: Path
    log_dir: Path
    check_interval_sec: float
    latency_sec: float
    deletion_policy: DeletionPolicy
    verbose: bool
    polling: bool
    ignore_patterns: tuple[str, ...]


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror changes from one folder into another in real time.")
    p.add_argument("-s", "--source", type=str, default=None, help="Folder to watch (source).")
    p.add_argument("-d", "--dest", type=str, default=None, help="Folder to update (destination).")
    p.add_argument("-v", "--verbose", action="store_true", help="Show every copy/delete on the console.")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-k", "--keep", action="store_true", help="Keep files in destination even if removed from source.")
    mode.add_argument("-m", "--move", action="store_true", help="Remove files from source once copied.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--check-interval", type=float, default=None, help="Seconds between destination checks.")
    p.add_argument("--latency", type=float, default=None, help="Seconds to coalesce change events into one batch.")
    p.add_argument("--polling", action="store_true", help="Poll the source tree instead of using OS notifications.")
    p.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Gitignore-style pattern to exclude (repeatable).",
    )
    return p.parse_args(argv)


def load_config_file() -> dict:
    try:
        if CONFIG_PATH.exists():
            return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        pass
    return {}


def save_config_file(cfg: AppConfig) -> None:
    APP_DIR.mkdir(parents=True, exist_ok=True)
    payload = {
        "source": str(cfg.source_dir),
        "dest": str(cfg.dest_dir),
        "log_dir": str(cfg.log_dir),
        "check_interval_sec": cfg.check_interval_sec,
        "deletion_policy": cfg.deletion_policy.value,
    }
    CONFIG_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _policy_from_args(args: argparse.Namespace, saved: dict) -> DeletionPolicy:
    if args.keep:
        return DeletionPolicy.KEEP
    if args.move:
        return DeletionPolicy.MOVE
    try:
        return DeletionPolicy(saved.get("deletion_policy", DeletionPolicy.MIRROR.value))
    except ValueError:
        return DeletionPolicy.MIRROR


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    saved = load_config_file()

    source = args.source or saved.get("source")
    dest = args.dest or saved.get("dest")
    if not source:
        raise ConfigError("Source (-s) is required.")
    if not dest:
        raise ConfigError("Destination (-d) is required.")

    if args.log_dir:
        log_dir = Path(args.log_dir)
    elif "log_dir" in saved:
        log_dir = Path(saved["log_dir"])
    else:
        log_dir = APP_DIR / "logs"

    if args.check_interval is not None:
        check_interval = float(args.check_interval)
    else:
        check_interval = float(saved.get("check_interval_sec", DEFAULT_CHECK_INTERVAL_SEC))
    if check_interval < 0.1:
        raise ConfigError(f"Check interval must be at least 0.1 seconds: {check_interval}")

    latency = float(args.latency) if args.latency is not None else DEFAULT_LATENCY_SEC
    if latency < 0:
        raise ConfigError(f"Latency cannot be negative: {latency}")

    return AppConfig(
        source_dir=Path(source),
        dest_dir=Path(dest),
        log_dir=log_dir,
        check_interval_sec=check_interval,
        latency_sec=latency,
        deletion_policy=_policy_from_args(args, saved),
        verbose=bool(args.verbose),
        polling=bool(args.polling),
        ignore_patterns=tuple(args.ignore),
    )


def _is_subpath(child: str, parent: str) -> bool:
    if parent == os.sep:
        return True
    return child.startswith(parent + os.sep)


def validate_paths(source: Path, dest: Path) -> tuple[str, str]:
    src_root = normalize_root(str(source))
    dst_root = normalize_root(str(dest))

    if not os.path.isdir(src_root):
        raise ConfigError(f"Source folder does not exist or is not a folder: {src_root}")
    if src_root == dst_root:
        raise ConfigError("Source and destination folders must be different.")
    if os.path.exists(dst_root) and not os.path.isdir(dst_root):
        raise ConfigError(f"Destination exists and is not a folder: {dst_root}")
    if _is_subpath(dst_root, src_root):
        raise ConfigError("Destination folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(src_root, dst_root):
        raise ConfigError("Source folder must NOT be inside destination folder (would cause loops).")

    return src_root, dst_root


# -------------------------
# Paths + filtering
# -------------------------

def normalize_root(path: str) -> str:
    path = os.path.abspath(os.path.expanduser(path))
    if len(path) > 1 and path.endswith(os.sep):
        path = path.rstrip(os.sep) or os.sep
    return path


def _relative_suffix(path: str, root: str) -> str:
    if len(path) < len(root):
        raise ValueError(f"path shorter than root: {path}")
    if root == os.sep:
        return path[len(root) - 1:]
    if not path.startswith(root) or (len(path) > len(root) and path[len(root)] != os.sep):
        raise ValueError(f"path outside root {root}: {path}")
    return path[len(root):]


def translate_path(path: str, config: SyncConfig) -> str:
    suffix = _relative_suffix(path, config.source_root)
    if config.dest_root == os.sep:
        return suffix or os.sep
    return config.dest_root + suffix


class IgnoreMatcher:
    def __init__(self, source_root: str, patterns: Iterable[str] = ()):
        self.source_root = source_root
        self.patterns = [p for p in patterns if p]
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, path: str, is_dir: Optional[bool] = None) -> bool:
        if not self.patterns:
            return False
        try:
            rel = _relative_suffix(path, self.source_root).lstrip(os.sep)
        except ValueError:
            return True
        rel_posix = rel.replace(os.sep, "/")
        if is_dir is None:
            is_dir = os.path.isdir(path) and not os.path.islink(path)
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def is_noise(path: str, config: SyncConfig, ignore: Optional[IgnoreMatcher] = None) -> bool:
    if path == config.source_root:
        return True
    try:
        rel = _relative_suffix(path, config.source_root)
    except ValueError:
        return False
    if any(marker in rel for marker in BOOKKEEPING_MARKERS):
        return True
    return ignore is not None and ignore.is_ignored(path)


def is_safe_delete_target(path: str, config: SyncConfig) -> bool:
    return path != config.source_root and path != config.dest_root


# -------------------------
# Copy / delete primitives
# -------------------------

def ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _same_entry(src_st: os.stat_result, dst_st: os.stat_result) -> bool:
    if stat.S_IFMT(src_st.st_mode) != stat.S_IFMT(dst_st.st_mode):
        return False
    if stat.S_IMODE(src_st.st_mode) != stat.S_IMODE(dst_st.st_mode):
        return False
    if stat.S_ISREG(src_st.st_mode) and src_st.st_size != dst_st.st_size:
        return False
    return src_st.st_mtime_ns == dst_st.st_mtime_ns


def delete_entry(path: str) -> bool:
    """Remove path recursively without following symlinks. Returns False if nothing was there."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    if stat.S_ISDIR(st.st_mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)
    return True


def copy_entry(src: str, dst: str) -> bool:
    """
    Copy a single entry, preserving mode, timestamps and xattrs, never following symlinks.
    Directories are created, not recursed into. Returns False when dst was already current.
    Raises FileNotFoundError if src is gone.
    """
    src_st = os.lstat(src)
    try:
        dst_st = os.lstat(dst)
    except FileNotFoundError:
        dst_st = None

    if dst_st is not None:
        if stat.S_ISLNK(src_st.st_mode):
            if stat.S_ISLNK(dst_st.st_mode) and os.readlink(src) == os.readlink(dst):
                return False
            delete_entry(dst)
        elif _same_entry(src_st, dst_st):
            return False
        elif stat.S_IFMT(src_st.st_mode) != stat.S_IFMT(dst_st.st_mode):
            delete_entry(dst)

    if stat.S_ISDIR(src_st.st_mode):
        os.makedirs(dst, exist_ok=True)
        shutil.copystat(src, dst, follow_symlinks=False)
        return True

    ensure_parent(dst)
    shutil.copy2(src, dst, follow_symlinks=False)
    return True


def copy_tree(src: str, dst: str) -> bool:
    """Recursive copy used when a whole directory is moved out of the source."""
    if not os.path.isdir(src) or os.path.islink(src):
        return copy_entry(src, dst)
    if os.path.lexists(dst) and (os.path.islink(dst) or not os.path.isdir(dst)):
        delete_entry(dst)
    ensure_parent(dst)
    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    return True


def _matches_copy(src: str, dst: str) -> bool:
    try:
        src_st = os.lstat(src)
        dst_st = os.lstat(dst)
    except FileNotFoundError:
        return False
    if stat.S_ISLNK(src_st.st_mode):
        return stat.S_ISLNK(dst_st.st_mode) and os.readlink(src) == os.readlink(dst)
    return _same_entry(src_st, dst_st)


def _rmdir_if_empty(path: str) -> bool:
    try:
        os.rmdir(path)
    except OSError as e:
        if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
            return False
        raise
    return True


def prune_moved(src: str, dst: str) -> bool:
    """
    Remove the source side of a move, keeping anything without an identical copy in dst
    (entries added or changed after the copy was taken). Their own events move them later.
    Returns True when src itself is gone.
    """
    try:
        src_st = os.lstat(src)
    except FileNotFoundError:
        return False

    if not stat.S_ISDIR(src_st.st_mode):
        if not _matches_copy(src, dst):
            return False
        os.unlink(src)
        return True

    for dirpath, dirnames, filenames in os.walk(src, topdown=False):
        rel = os.path.relpath(dirpath, src)
        target = dst if rel == os.curdir else os.path.join(dst, rel)
        for name in filenames:
            path = os.path.join(dirpath, name)
            if _matches_copy(path, os.path.join(target, name)):
                os.unlink(path)
        for name in dirnames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                if _matches_copy(path, os.path.join(target, name)):
                    os.unlink(path)
            else:
                _rmdir_if_empty(path)
    return _rmdir_if_empty(src)


# -------------------------
# Destination availability
# -------------------------

class DestinationState(str, enum.Enum):
    READY = "ready"
    NOT_READY = "not_ready"


class AvailabilityMonitor(threading.Thread):
    """
    Polls the destination root and keeps a READY/NOT_READY flag for the reconciler.

    A missing root is recreated (with parents). Only transitions are logged, so a
    destination that stays unreachable does not flood the log on every tick.
    """

    def __init__(
        self,
        dest_root: str,
        interval_sec: float = DEFAULT_CHECK_INTERVAL_SEC,
        logger: Optional[logging.Logger] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__(daemon=True, name="dir-mirror-monitor")
        self.dest_root = dest_root
        self.interval_sec = max(0.1, float(interval_sec))
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.stop_event = stop_event or threading.Event()
        self._state = DestinationState.NOT_READY
        self._guard = threading.Lock()

    @property
    def state(self) -> DestinationState:
        with self._guard:
            return self._state

    def is_ready(self) -> bool:
        return self.state is DestinationState.READY

    def _set_state(self, new: DestinationState) -> DestinationState:
        with self._guard:
            old = self._state
            self._state = new
            return old

    def check(self) -> Optional[str]:
        """One tick. Returns the observation ("connected", "created", "recreated", "lost") or None."""
        if os.path.isdir(self.dest_root):
            if self._set_state(DestinationState.READY) is DestinationState.NOT_READY:
                log_action(self.logger, "READY", f"destination connected: {self.dest_root}", path=self.dest_root, is_dir=True)
                return "connected"
            return None

        try:
            os.makedirs(self.dest_root, mode=DEST_ROOT_MODE, exist_ok=True)
        except OSError as e:
            if self._set_state(DestinationState.NOT_READY) is DestinationState.READY:
                log_action(
                    self.logger,
                    "LOST",
                    f"destination unavailable: {self.dest_root} | {e}",
                    path=self.dest_root,
                    is_dir=True,
                    level=logging.WARNING,
                )
                return "lost"
            return None

        if self._set_state(DestinationState.READY) is DestinationState.NOT_READY:
            log_action(self.logger, "READY", f"destination created: {self.dest_root}", path=self.dest_root, is_dir=True)
            return "created"
        log_action(
            self.logger,
            "READY",
            f"destination vanished and was recreated: {self.dest_root}",
            path=self.dest_root,
            is_dir=True,
            level=logging.WARNING,
        )
        return "recreated"

    def run(self) -> None:
        self.logger.debug("MONITOR: started (interval=%.1fs)", self.interval_sec)
        while not self.stop_event.wait(self.interval_sec):
            try:
                self.check()
            except Exception as e:
                self.logger.error("MONITOR: check error: %s", e)
        self.logger.debug("MONITOR: stopped")

    def stop(self) -> None:
        self.stop_event.set()


# -------------------------
# Reconciliation
# -------------------------

@dataclass(frozen=True)
class ChangeEvent:
    path: str
    flags: str = ""


class DecisionKind(str, enum.Enum):
    COPY = "copy"
    DELETE = "delete"
    SKIP_DELETED = "skip_deleted"
    SKIP_SAFETY = "skip_safety"


@dataclass(frozen=True)
class SyncDecision:
    kind: DecisionKind
    path: str
    source: Optional[str] = None
    error: Optional[str] = None


class EventReconciler:
    """
    Turns a batch of change events into copies and deletes against the destination.

    Flags are ignored: each event is re-checked against the source as it is right now,
    so duplicated or reordered events converge to the same result. Batches are applied
    one at a time under a single lock. Destination directories whose contents changed
    get their metadata re-copied at the end of the batch, since writing a child moves
    the parent's mtime.
    """

    def __init__(
        self,
        config: SyncConfig,
        monitor: AvailabilityMonitor,
        ignore: Optional[IgnoreMatcher] = None,
        copier: Callable[[str, str], bool] = copy_entry,
        tree_copier: Callable[[str, str], bool] = copy_tree,
        remover: Callable[[str], bool] = delete_entry,
        mover_cleanup: Callable[[str, str], bool] = prune_moved,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.monitor = monitor
        self.ignore = ignore
        self.copier = copier
        self.tree_copier = tree_copier
        self.remover = remover
        self.mover_cleanup = mover_cleanup
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._lock = threading.Lock()

    def reconcile(self, batch: Iterable[ChangeEvent]) -> list[SyncDecision]:
        events = list(batch)
        if not self.monitor.is_ready():
            self.logger.debug("Destination not ready, dropped %d event(s)", len(events))
            return []

        decisions: list[SyncDecision] = []
        touched: set[str] = set()
        with self._lock:
            for event in events:
                if is_noise(event.path, self.config, self.ignore):
                    self.logger.debug("FILTER | %s", event.path)
                    continue
                try:
                    dst = translate_path(event.path, self.config)
                except ValueError as e:
                    self.logger.debug("FILTER | malformed event %s | %s", event.path, e)
                    continue

                decisions.extend(self._reconcile_one(event.path, dst, touched))
            self._restore_dir_metadata(touched)
        return decisions

    def _reconcile_one(self, src: str, dst: str, touched: set[str]) -> list[SyncDecision]:
        try:
            src_st = os.lstat(src)
        except FileNotFoundError:
            return [self._source_gone(dst, touched)]

        is_dir = stat.S_ISDIR(src_st.st_mode)
        moving = self.config.deletion_policy is DeletionPolicy.MOVE
        copier = self.tree_copier if moving and is_dir else self.copier
        try:
            copied = copier(src, dst)
        except OSError as e:
            if not os.path.lexists(src):
                self.logger.debug("COPY | source vanished during copy: %s", src)
                return [self._source_gone(dst, touched)]
            log_action(self.logger, "COPY", f"ERROR {src} -> {dst} | {e}", path=dst, is_dir=is_dir, level=logging.ERROR)
            return [SyncDecision(DecisionKind.COPY, dst, source=src, error=str(e))]

        if copied:
            touched.add(os.path.dirname(dst))
            log_action(self.logger, "COPY", f"{src} -> {dst}", path=dst, is_dir=is_dir)
        decisions = [SyncDecision(DecisionKind.COPY, dst, source=src)]
        if moving:
            decisions.append(self._delete(src, "moved", copied_to=dst))
        return decisions

    def _source_gone(self, dst: str, touched: set[str]) -> SyncDecision:
        if self.config.deletion_policy is DeletionPolicy.MIRROR:
            return self._delete(dst, "source deleted", touched=touched)
        log_action(self.logger, "SKIP_DELETE", f"{dst} (source deleted)", path=dst, is_dir=False)
        return SyncDecision(DecisionKind.SKIP_DELETED, dst)

    def _delete(
        self,
        path: str,
        reason: str,
        touched: Optional[set[str]] = None,
        copied_to: Optional[str] = None,
    ) -> SyncDecision:
        if not is_safe_delete_target(path, self.config):
            log_action(
                self.logger,
                "SKIP_SAFETY",
                f"refusing to delete root ({reason}): {path}",
                path=path,
                is_dir=True,
                level=logging.WARNING,
            )
            return SyncDecision(DecisionKind.SKIP_SAFETY, path)

        is_dir = os.path.isdir(path) and not os.path.islink(path)
        try:
            if copied_to is None:
                removed = self.remover(path)
            else:
                removed = self.mover_cleanup(path, copied_to)
        except OSError as e:
            log_action(self.logger, "DELETE", f"ERROR ({reason}) {path} | {e}", path=path, is_dir=is_dir, level=logging.ERROR)
            return SyncDecision(DecisionKind.DELETE, path, error=str(e))

        if removed:
            if touched is not None:
                touched.add(os.path.dirname(path))
            log_action(self.logger, "DELETE", f"({reason}) {path}", path=path, is_dir=is_dir)
        elif copied_to is not None and os.path.lexists(path):
            self.logger.debug("DELETE | (%s) kept entries changed after copy: %s", reason, path)
        return SyncDecision(DecisionKind.DELETE, path)

    def _restore_dir_metadata(self, touched: set[str]) -> None:
        for dst_dir in sorted(touched, key=len, reverse=True):
            if dst_dir == self.config.dest_root:
                continue
            try:
                src_dir = self.config.source_root + _relative_suffix(dst_dir, self.config.dest_root)
            except ValueError:
                continue
            if not os.path.isdir(src_dir) or os.path.islink(src_dir) or not os.path.isdir(dst_dir):
                continue
            try:
                shutil.copystat(src_dir, dst_dir, follow_symlinks=False)
            except OSError as e:
                self.logger.debug("COPY | metadata refresh failed for %s | %s", dst_dir, e)


# -------------------------
# Watch sources
# -------------------------

class WatchSource:
    """Delivers batches of ChangeEvents for a watched root until stopped."""

    def start(self, root: str) -> None:
        raise NotImplementedError

    def batches(self) -> Iterator[list[ChangeEvent]]:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


class _QueueingEventHandler(FileSystemEventHandler):
    def __init__(self, event_queue: "queue.Queue[Optional[ChangeEvent]]"):
        super().__init__()
        self._queue = event_queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        if event.event_type == "moved":
            self._queue.put(ChangeEvent(os.fsdecode(event.src_path), "moved_from"))
            self._queue.put(ChangeEvent(os.fsdecode(event.dest_path), "moved_to"))
            return
        self._queue.put(ChangeEvent(os.fsdecode(event.src_path), event.event_type))


class WatchdogSource(WatchSource):
    """
    Recursive watchdog observer feeding a queue; events arriving within `latency`
    seconds of the first one are handed out together as a single batch.
    """

    def __init__(self, latency: float = DEFAULT_LATENCY_SEC, polling: bool = False):
        self.latency = max(0.0, float(latency))
        self.polling = polling
        self._queue: "queue.Queue[Optional[ChangeEvent]]" = queue.Queue()
        self._observer = PollingObserver() if polling else Observer()
        self._stop_requested = threading.Event()

    def start(self, root: str) -> None:
        self._observer.schedule(_QueueingEventHandler(self._queue), root, recursive=True)
        self._observer.start()

    def batches(self) -> Iterator[list[ChangeEvent]]:
        while not self._stop_requested.is_set():
            try:
                first = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            if first is None:
                break

            batch = [first]
            deadline = time.monotonic() + self.latency
            stopping = False
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    item = self._queue.get(timeout=remaining)
                except queue.Empty:
                    break
                if item is None:
                    stopping = True
                    break
                batch.append(item)
            yield batch
            if stopping:
                break

    def stop(self) -> None:
        self._stop_requested.set()
        self._queue.put(None)
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=10)


# -------------------------
# Session
# -------------------------

class MirrorSession:
    def __init__(
        self,
        config: SyncConfig,
        source: Optional[WatchSource] = None,
        ignore: Optional[IgnoreMatcher] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SEC,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.source = source or WatchdogSource()
        self.stop_event = threading.Event()
        self.monitor = AvailabilityMonitor(
            config.dest_root,
            interval_sec=check_interval,
            logger=self.logger,
            stop_event=self.stop_event,
        )
        self.reconciler = EventReconciler(config, self.monitor, ignore=ignore, logger=self.logger)
        self._consumer = threading.Thread(target=self._consume, daemon=True, name="dir-mirror-reconciler")

    def start(self) -> None:
        self.monitor.check()
        self.monitor.start()
        try:
            self.source.start(self.config.source_root)
        except Exception:
            self.monitor.stop()
            raise
        self._consumer.start()

        self.logger.info("Watching: %s", self.config.source_root)
        self.logger.info("Syncing to: %s", self.config.dest_root)
        if self.config.deletion_policy is not DeletionPolicy.MIRROR:
            self.logger.info("Mode: %s", self.config.deletion_policy.value.upper())

    def _consume(self) -> None:
        for batch in self.source.batches():
            try:
                self.reconciler.reconcile(batch)
            except Exception as e:
                self.logger.error("Batch of %d event(s) failed: %s", len(batch), e)
            if self.stop_event.is_set():
                break

    def stop(self) -> None:
        self.stop_event.set()
        self.source.stop()
        if self.monitor.is_alive():
            self.monitor.join(timeout=10)
        if self._consumer.is_alive():
            self._consumer.join(timeout=10)

    def run_forever(self) -> None:
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            self.logger.info("Stopping...")
        finally:
            self.stop()
            self.logger.info("Stopped.")


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(cfg.log_dir.expanduser(), verbose=cfg.verbose)

    try:
        source_root, dest_root = validate_paths(cfg.source_dir, cfg.dest_dir)
        config = SyncConfig(source_root, dest_root, cfg.deletion_policy, cfg.verbose)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2
    logger.debug("Paths verified")

    try:
        save_config_file(cfg)
        logger.debug("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    ignore = IgnoreMatcher(source_root, cfg.ignore_patterns) if cfg.ignore_patterns else None
    session = MirrorSession(
        config,
        source=WatchdogSource(latency=cfg.latency_sec, polling=cfg.polling),
        ignore=ignore,
        check_interval=cfg.check_interval_sec,
        logger=logger,
    )

    try:
        session.start()
    except OSError as e:
        logger.error("Failed to start watch: %s", e)
        return 1

    logger.info("Starting watcher... (Ctrl+C to stop)")
    session.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
