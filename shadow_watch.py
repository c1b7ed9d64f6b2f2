# /shadow_watch.py
"""
Shadow Watch
- Watches one or more paths and mirrors new/finished files into a mirror folder.
- Directories are mirrored immediately; files are copied after a quiescence delay
  so slow writers can settle (default 10s).
- Each event schedules its own delayed copy: no coalescing, last writer wins.
- The copy re-checks the source at fire time and silently skips vanished files.
- Mirror folder is opt-in and must already exist; it is never auto-created.
- Optional gitignore-style ignore rules and an on-change command hook.
- Styled console output:
  - COPY green
  - MKDIR / DIR_EXISTS light brown
  - errors red
  - file paths white
  - folder paths light brown
- Log file (when --log-dir is given) is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  watch /data /backup
  watch /data /backup --layout relative --delay 5 --halt
"""

from __future__ import annotations

import abc
import argparse
import datetime as dt
import logging
import math
import os
import queue
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

__version__ = "0.3.0"

LOGGER_NAME = "shadow_watch"

DEFAULT_DELAY_SEC = 10.0
DEFAULT_INTERVAL = "1s"
POLL_INTERVAL_SEC = 0.5

LAYOUT_ABSOLUTE = "absolute"
LAYOUT_RELATIVE = "relative"


# -------------------------
# Errors
# -------------------------

class WatchError(Exception):
    """Base class for everything this tool raises on purpose."""


class ConfigError(WatchError):
    pass


class PathNotFound(WatchError):
    pass


class StatFailed(WatchError):
    pass


class WatchRegistrationFailed(WatchError):
    pass


class MirrorDirUnavailable(WatchError):
    pass


class DirectoryCreateFailed(WatchError):
    def __init__(self, path: Path, error: OSError):
        super().__init__(f"cannot create directory {path}: {error}")
        self.path = path
        self.error = error


class CopyFailed(WatchError):
    def __init__(self, src: Path, dst: Path, error: OSError):
        super().__init__(f"cannot copy {src} -> {dst}: {error}")
        self.src = src
        self.dst = dst
        self.error = error


class EventSourceError(WatchError):
    pass


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "COPY_SCHEDULED": Ansi.GREEN,
    "COPY_SKIP": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "DIR_EXISTS": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "RUN": Ansi.ORANGE,
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
            if record.levelno >= logging.WARNING:
                action_color = Ansi.ORANGE
            else:
                action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "shadow") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # main() may run more than once per process (tests, embedding)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    paths: tuple[str, ...]
    mirror_dir: Optional[Path] = None
    recurse: bool = True
    halt_on_error: bool = False
    quiet: bool = False
    interval_sec: float = 1.0
    delay_sec: float = DEFAULT_DELAY_SEC
    on_change: Optional[str] = None
    layout: str = LAYOUT_ABSOLUTE
    ignore_patterns: tuple[str, ...] = ()
    sync_on_modify: bool = False
    log_dir: Optional[Path] = None


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(text: str) -> float:
    """Parse a duration such as ``1s``, ``250ms`` or ``1h30m`` into seconds.

    A bare number is read as seconds. Negative durations are rejected.
    """
    raw = text.strip()
    if not raw:
        raise ConfigError("empty duration")
    try:
        value = float(raw)
    except ValueError:
        pass
    else:
        if not math.isfinite(value) or value < 0:
            raise ConfigError(f"invalid duration: {text!r}")
        return value

    total = 0.0
    pos = 0
    for m in _DURATION_PART.finditer(raw):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(raw):
        raise ConfigError(f"invalid duration: {text!r}")
    return total


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="watch",
        description="Watch a path and mirror new or finished files into a mirror folder.",
        epilog="Example: watch /data /backup",
    )
    p.add_argument("path", nargs="?", default=None, help="File or folder to watch.")
    p.add_argument("mirror_dir", nargs="?", default=None, help="Existing folder to mirror into (optional).")
    p.add_argument("--halt", action="store_true", help="Exit on error (default: false).")
    p.add_argument("-q", "--quiet", action="store_true", help="Suppress event output (default: false).")
    p.add_argument(
        "-i",
        "--interval",
        default=DEFAULT_INTERVAL,
        help="Run the on-change command at most once within this interval (default: %(default)s).",
    )
    p.add_argument("-n", "--no-recurse", action="store_true", help="Skip subfolders (default: false).")
    p.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--on-change", default=None, help="Run command on change.")
    p.add_argument(
        "--delay",
        type=float,
        default=DEFAULT_DELAY_SEC,
        help="Seconds to wait before copying a changed file (default: %(default)s).",
    )
    p.add_argument(
        "--layout",
        choices=(LAYOUT_ABSOLUTE, LAYOUT_RELATIVE),
        default=LAYOUT_ABSOLUTE,
        help="absolute: mirror/<full source path>; relative: mirror/<path under the watched root>.",
    )
    p.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="gitignore-style pattern to skip (repeatable).",
    )
    p.add_argument(
        "--sync-on-modify",
        action="store_true",
        help="Also mirror on plain modify events (for platforms without close-write events).",
    )
    p.add_argument("--log-dir", default=None, help="Also write a plain log file into this folder.")
    return p


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    interval = parse_duration(args.interval)
    if args.delay < 0:
        raise ConfigError(f"delay must not be negative: {args.delay}")

    return AppConfig(
        paths=(args.path,) if args.path else (),
        mirror_dir=Path(args.mirror_dir).expanduser() if args.mirror_dir else None,
        recurse=not args.no_recurse,
        halt_on_error=args.halt,
        quiet=args.quiet,
        interval_sec=interval,
        delay_sec=float(args.delay),
        on_change=args.on_change,
        layout=args.layout,
        ignore_patterns=tuple(args.ignore),
        sync_on_modify=args.sync_on_modify,
        log_dir=Path(args.log_dir).expanduser() if args.log_dir else None,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def check_mirror_dir(mirror_dir: Optional[Path], roots: Sequence[Path]) -> Path:
    """Validate the mirror folder against the watched roots.

    Raises MirrorDirUnavailable when it is missing or sits inside a watched
    root (mirroring into a watched tree would feed its own events).
    """
    if mirror_dir is None:
        raise MirrorDirUnavailable("no mirror directory configured")
    if not mirror_dir.is_dir():
        raise MirrorDirUnavailable(f"mirror directory does not exist: {mirror_dir}")

    mirror = mirror_dir.resolve()
    for root in roots:
        base = root if root.is_dir() else root.parent
        if _is_subpath(mirror, base):
            raise MirrorDirUnavailable(f"mirror directory must NOT be inside watched path {base}")
    return mirror


# -------------------------
# Ignore
# -------------------------

def abspath(path) -> Path:
    """Absolute, normalized path without resolving symlinks (matches what watchers report)."""
    return Path(os.path.abspath(os.path.expanduser(os.fspath(path))))


class IgnoreMatcher:
    def __init__(self, roots: Iterable[Path], patterns: Iterable[str]):
        self.bases = [r if r.is_dir() else r.parent for r in (abspath(p) for p in roots)]
        self.spec = PathSpec.from_lines("gitwildmatch", list(patterns))

    def is_ignored(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        path = Path(path)
        for base in self.bases:
            try:
                rel = path.relative_to(base)
            except ValueError:
                continue
            rel_posix = rel.as_posix()
            if rel_posix == ".":
                return False
            if is_dir is None:
                is_dir = path.is_dir()
            if is_dir and not rel_posix.endswith("/"):
                rel_posix += "/"
            return self.spec.match_file(rel_posix)
        return False


# -------------------------
# Path resolution
# -------------------------

@dataclass(frozen=True)
class WatchRoot:
    path: Path
    recursive: bool = True


def resolve_paths(
    args: Sequence[str],
    recurse: bool = True,
    ignore: Optional[IgnoreMatcher] = None,
    logger: Optional[logging.Logger] = None,
) -> list[WatchRoot]:
    """Expand root arguments into the concrete paths to register.

    Files are watched as-is. Directories are added together with every
    subdirectory when ``recurse`` is set; a parent always precedes its
    children in the result.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    resolved: list[WatchRoot] = []

    def _walk_error(err: OSError) -> None:
        logger.warning("Cannot list %s: %s", err.filename, err)

    for arg in args:
        if not arg:
            continue

        path = abspath(arg)
        try:
            path.stat()
        except FileNotFoundError as e:
            raise PathNotFound(f"path does not exist: {arg}") from e
        except OSError as e:
            raise StatFailed(f"cannot stat {arg}: {e}") from e

        if not path.is_dir():
            resolved.append(WatchRoot(path, recursive=recurse))
            continue

        if not recurse:
            resolved.append(WatchRoot(path, recursive=False))
            continue

        for dirpath, dirnames, _ in os.walk(path, onerror=_walk_error):
            current = Path(dirpath)
            resolved.append(WatchRoot(current, recursive=True))
            if ignore is not None:
                dirnames[:] = [d for d in dirnames if not ignore.is_ignored(current / d, is_dir=True)]

    return resolved


# -------------------------
# Mirror path mapping
# -------------------------

def map_to_mirror(path: str, mirror_dir: str, platform: Optional[str] = None) -> str:
    """Map an absolute source path into the mirror folder.

    Drive-letter platforms swap the ``X:`` prefix for the mirror folder,
    rooted platforms prepend the mirror folder to the whole path.
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        if len(path) < 2 or path[1] != ":":
            raise ValueError(f"not a drive-letter path: {path!r}")
        return mirror_dir.rstrip("\\/") + path[2:]

    if not path.startswith("/"):
        raise ValueError(f"not an absolute path: {path!r}")
    return mirror_dir.rstrip("/") + path


Mapper = Callable[[Path, Path], Path]


def build_mapper(layout: str, roots: Sequence[Path] = (), platform: Optional[str] = None) -> Mapper:
    if layout == LAYOUT_ABSOLUTE:
        def _absolute(src: Path, mirror: Path) -> Path:
            return Path(map_to_mirror(str(src), str(mirror), platform))

        return _absolute

    if layout == LAYOUT_RELATIVE:
        bases = [r if r.is_dir() else r.parent for r in (abspath(p) for p in roots)]
        if not bases:
            raise ConfigError("relative layout needs at least one watched root")

        def _relative(src: Path, mirror: Path) -> Path:
            for base in bases:
                try:
                    return mirror / Path(src).relative_to(base)
                except ValueError:
                    continue
            raise ValueError(f"{src} is not under any watched root")

        return _relative

    raise ConfigError(f"unknown layout: {layout!r}")


# -------------------------
# Mirror sync
# -------------------------

@dataclass(eq=False)
class PendingCopy:
    src: Path
    dst: Path
    fire_at: dt.datetime
    timer: Optional[threading.Timer] = field(default=None, repr=False)
    copied: bool = False
    skipped: bool = False
    error: Optional[CopyFailed] = None

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the copy has fired (or was cancelled). Returns False on timeout."""
        if self.timer is None:
            return True
        self.timer.join(timeout)
        return not self.timer.is_alive()


class MirrorSync:
    def __init__(
        self,
        mirror_dir: Optional[Path],
        mapper: Mapper,
        delay_sec: float = DEFAULT_DELAY_SEC,
        logger: Optional[logging.Logger] = None,
        on_error: Optional[Callable[[WatchError], None]] = None,
    ):
        self.mirror_dir = mirror_dir
        self.mapper = mapper
        self.delay_sec = delay_sec
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.on_error = on_error
        self._pending: set[PendingCopy] = set()
        self._guard = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._guard:
            return len(self._pending)

    def sync(self, src: Path) -> Optional[PendingCopy]:
        """Mirror one changed path.

        Directories are created right away; files get a delayed copy whose
        handle is returned. Raises DirectoryCreateFailed when the
        destination folder chain cannot be created.
        """
        mirror = self.mirror_dir
        if mirror is None or not mirror.is_dir():
            return None

        src = Path(src)
        try:
            dst = self.mapper(src, mirror)
        except ValueError as e:
            log_action(self.logger, "COPY_SKIP", f"cannot map {src} | {e}", path=src, level=logging.WARNING)
            return None

        if src.is_dir():
            if dst.is_dir():
                log_action(self.logger, "DIR_EXISTS", f"{dst}", path=dst, is_dir=True)
                return None
            try:
                dst.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DirectoryCreateFailed(dst, e) from e
            log_action(self.logger, "MKDIR", f"{dst}", path=dst, is_dir=True)
            return None

        if src.is_file():
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DirectoryCreateFailed(dst.parent, e) from e
            return self._schedule_copy(src, dst)

        self.logger.debug("Source vanished before sync: %s", src)
        return None

    def cancel_pending(self) -> int:
        with self._guard:
            pending = list(self._pending)
            self._pending.clear()
        for item in pending:
            item.cancel()
        return len(pending)

    def _schedule_copy(self, src: Path, dst: Path) -> PendingCopy:
        pending = PendingCopy(
            src=src,
            dst=dst,
            fire_at=dt.datetime.now() + dt.timedelta(seconds=self.delay_sec),
        )
        timer = threading.Timer(self.delay_sec, self._fire, args=(pending,))
        timer.daemon = True
        pending.timer = timer

        log_action(
            self.logger,
            "COPY_SCHEDULED",
            f"{src} -> {dst} in {self.delay_sec:g}s",
            path=src,
            is_dir=False,
        )
        with self._guard:
            self._pending.add(pending)
        timer.start()
        return pending

    def _fire(self, pending: PendingCopy) -> None:
        try:
            self._copy(pending)
        finally:
            with self._guard:
                self._pending.discard(pending)

    def _copy(self, pending: PendingCopy) -> None:
        src, dst = pending.src, pending.dst
        # deleted during the quiescence delay: the file was transient
        if not src.is_file():
            pending.skipped = True
            self.logger.debug("Source gone before copy: %s", src)
            return

        try:
            # copyfile streams and refuses a directory at dst (copy2 would copy into it)
            shutil.copyfile(src, dst)
        except FileNotFoundError as e:
            if not src.exists():
                pending.skipped = True
                self.logger.debug("Source gone during copy: %s", src)
                return
            self._copy_failed(pending, e)
            return
        except OSError as e:
            self._copy_failed(pending, e)
            return

        pending.copied = True
        log_action(self.logger, "COPY", f"{src} -> {dst}", path=dst, is_dir=False)

        # vfat/CIFS mirrors may refuse chmod/utime; the bytes are already there
        try:
            shutil.copystat(src, dst)
        except OSError as e:
            log_action(self.logger, "COPY_STAT", f"metadata not kept for {dst} | {e}", path=dst,
                       is_dir=False, level=logging.WARNING)

    def _copy_failed(self, pending: PendingCopy, error: OSError) -> None:
        failure = CopyFailed(pending.src, pending.dst, error)
        pending.error = failure
        if self.on_error is not None:
            self.on_error(failure)
        else:
            log_action(self.logger, "COPY_FAIL", str(failure), path=pending.dst, is_dir=False, level=logging.ERROR)


# -------------------------
# Event source
# -------------------------

class EventKind(str, Enum):
    CREATED = "created"
    ATTRIBUTE_CHANGED = "attribute_changed"
    WRITE_FINISHED = "write_finished"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    path: Path
    kind: EventKind
    is_directory: bool = False

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.path}"


class EventSource(abc.ABC):
    """Stream of ChangeEvents plus a separate stream of errors."""

    def __init__(self) -> None:
        self.events: "queue.Queue[ChangeEvent]" = queue.Queue()
        self.errors: "queue.Queue[EventSourceError]" = queue.Queue()

    @abc.abstractmethod
    def watch(self, path: Path) -> None:
        """Start delivering events for one file or folder (non-recursive)."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop delivering events. Safe to call twice."""

    def check_health(self) -> None:
        """Hook for sources that can only detect failures by polling."""

    def publish(self, event: ChangeEvent) -> None:
        self.events.put(event)

    def report_error(self, error: EventSourceError) -> None:
        self.errors.put(error)


class _QueueingHandler(FileSystemEventHandler):
    def __init__(self, source: "WatchdogEventSource"):
        super().__init__()
        self.source = source

    def dispatch(self, event) -> None:
        try:
            super().dispatch(event)
        except Exception as e:
            self.source.report_error(EventSourceError(f"failed to handle {event!r}: {e}"))

    def on_created(self, event):
        self.source.emit(event.src_path, EventKind.CREATED, event.is_directory)

    def on_closed(self, event):
        self.source.emit(event.src_path, EventKind.WRITE_FINISHED, event.is_directory)

    def on_modified(self, event):
        self.source.emit(event.src_path, EventKind.MODIFIED, event.is_directory)

    def on_deleted(self, event):
        self.source.emit(event.src_path, EventKind.DELETED, event.is_directory)

    def on_moved(self, event):
        self.source.emit(event.src_path, EventKind.DELETED, event.is_directory)
        self.source.emit(event.dest_path, EventKind.CREATED, event.is_directory)


class WatchdogEventSource(EventSource):
    """EventSource backed by a watchdog Observer.

    Every path is scheduled non-recursively; recursion comes from
    registering each subdirectory. A file is watched through its parent
    folder with events filtered down to that file.
    """

    def __init__(self, observer_factory: Callable[[], Observer] = Observer):
        super().__init__()
        self._observer = observer_factory()
        self._handler = _QueueingHandler(self)
        self._dirs: set[str] = set()
        self._files: dict[str, set[str]] = {}
        self._scheduled: set[str] = set()
        self._reported_dead: set[str] = set()
        self._guard = threading.Lock()
        self._started = False
        self._closed = False

    def watch(self, path: Path) -> None:
        path = abspath(path)
        try:
            is_dir = path.is_dir()
            target = path if is_dir else path.parent
            target.stat()
            if not is_dir:
                path.stat()
        except OSError as e:
            raise WatchRegistrationFailed(f"cannot watch {path}: {e}") from e

        with self._guard:
            if is_dir:
                self._dirs.add(str(path))
            else:
                self._files.setdefault(str(target), set()).add(str(path))

        key = str(target)
        if key in self._scheduled:
            return
        try:
            if not self._started:
                self._observer.start()
                self._started = True
            self._observer.schedule(self._handler, key, recursive=False)
        except OSError as e:
            raise WatchRegistrationFailed(f"cannot watch {path}: {e}") from e
        self._scheduled.add(key)

    def emit(self, raw_path, kind: EventKind, is_directory: bool) -> None:
        path = os.fsdecode(raw_path)
        parent = os.path.dirname(path)
        with self._guard:
            wanted = parent in self._dirs or path in self._files.get(parent, ())
        if wanted:
            self.publish(ChangeEvent(Path(path), kind, bool(is_directory)))

    def check_health(self) -> None:
        if not self._started or self._closed:
            return
        if not self._observer.is_alive() and "<observer>" not in self._reported_dead:
            self._reported_dead.add("<observer>")
            self.report_error(EventSourceError("watch observer stopped unexpectedly"))
        for emitter in list(self._observer.emitters):
            watched = emitter.watch.path
            if not emitter.is_alive() and watched not in self._reported_dead:
                self._reported_dead.add(watched)
                self.report_error(EventSourceError(f"watch on {watched} stopped unexpectedly"))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._started:
            self._observer.unschedule_all()
            self._observer.stop()
            self._observer.join(timeout=10)
        self._scheduled.clear()


# -------------------------
# On-change command
# -------------------------

class ChangeCommand:
    """Runs an external command on change, at most once per interval."""

    def __init__(
        self,
        command: str,
        interval_sec: float,
        quiet: bool = False,
        logger: Optional[logging.Logger] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.args = shlex.split(command)
        if not self.args:
            raise ConfigError("on-change command is empty")
        self.interval_sec = interval_sec
        self.quiet = quiet
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._runner = runner
        self._last: Optional[float] = None

    def trigger(self) -> Optional[threading.Thread]:
        now = time.monotonic()
        if self._last is not None and now - self._last < self.interval_sec:
            return None
        self._last = now

        worker = threading.Thread(target=self._run, name="ChangeCommand", daemon=True)
        worker.start()
        return worker

    def _run(self) -> None:
        output = subprocess.DEVNULL if self.quiet else None
        log_action(self.logger, "RUN", " ".join(self.args))
        try:
            result = self._runner(self.args, stdout=output, stderr=output)
        except OSError as e:
            log_action(self.logger, "RUN", f"ERROR {self.args[0]} | {e}", level=logging.ERROR)
            return
        if result.returncode != 0:
            log_action(self.logger, "RUN", f"{self.args[0]} exited with {result.returncode}", level=logging.WARNING)


# -------------------------
# Watch loop
# -------------------------

class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class WatchLoop:
    """Feeds EventSource output into MirrorSync until stopped.

    Events are handled one at a time on the calling thread. Per-event
    failures are logged and, with ``halt_on_error``, end the loop with
    status 1. ``stop()`` (or Ctrl+C) ends it with status 0.
    """

    def __init__(
        self,
        source: EventSource,
        mirror: MirrorSync,
        halt_on_error: bool = False,
        quiet: bool = False,
        sync_on_modify: bool = False,
        ignore: Optional[IgnoreMatcher] = None,
        command: Optional[ChangeCommand] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.mirror = mirror
        self.halt_on_error = halt_on_error
        self.quiet = quiet
        self.ignore = ignore
        self.command = command
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.state = LoopState.IDLE
        self.actionable = {EventKind.CREATED, EventKind.ATTRIBUTE_CHANGED, EventKind.WRITE_FINISHED}
        if sync_on_modify:
            self.actionable.add(EventKind.MODIFIED)
        self._stop_event = threading.Event()
        self._exit_code = 0

        # delayed copies report back through the loop
        self.mirror.on_error = self.fail

    def register(self, roots: Iterable[WatchRoot]) -> int:
        count = 0
        for root in roots:
            self.source.watch(root.path)
            log_action(self.logger, "WATCH", f"{root.path}", path=root.path)
            count += 1
        return count

    def stop(self, exit_code: int = 0) -> None:
        if exit_code and not self._exit_code:
            self._exit_code = exit_code
        self._stop_event.set()

    def fail(self, error: WatchError) -> None:
        log_action(self.logger, "ERROR", str(error), level=logging.ERROR)
        if self.halt_on_error:
            self.stop(exit_code=1)

    def handle_event(self, event: ChangeEvent) -> None:
        if self.ignore is not None and self.ignore.is_ignored(event.path, is_dir=event.is_directory):
            return

        if not self.quiet:
            log_action(self.logger, "EVENT", str(event), path=event.path, is_dir=event.is_directory)

        if event.kind not in self.actionable:
            return

        try:
            self.mirror.sync(event.path)
        except WatchError as e:
            self.fail(e)

        if self.command is not None:
            self.command.trigger()

    def run(self) -> int:
        self.state = LoopState.RUNNING
        try:
            while not self._stop_event.is_set():
                self.source.check_health()
                self._drain_errors()
                if self._stop_event.is_set():
                    break
                try:
                    event = self.source.events.get(timeout=POLL_INTERVAL_SEC)
                except queue.Empty:
                    continue
                self.handle_event(event)
        except KeyboardInterrupt:
            if not self.quiet:
                self.logger.info("Interrupted. Cleaning up before exiting...")
        finally:
            self.state = LoopState.SHUTTING_DOWN
            self._shutdown()
            self.state = LoopState.TERMINATED
        return self._exit_code

    def _drain_errors(self) -> None:
        while True:
            try:
                error = self.source.errors.get_nowait()
            except queue.Empty:
                return
            if not isinstance(error, WatchError):
                error = EventSourceError(str(error))
            self.fail(error)

    def _shutdown(self) -> None:
        try:
            self.source.close()
        finally:
            dropped = self.mirror.cancel_pending()
            if dropped:
                self.logger.warning("Dropped %d pending copies", dropped)
            self.logger.info("Stopped.")


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.path is None:
        parser.print_help(sys.stderr)
        return 0

    log_dir = Path(args.log_dir).expanduser() if args.log_dir else None
    try:
        logger = setup_logger(log_dir)
    except OSError as e:
        # console handler is already attached
        logging.getLogger(LOGGER_NAME).error("Cannot write log file in %s: %s", log_dir, e)
        return 1

    try:
        cfg = build_config(args)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 1

    ignore = IgnoreMatcher([Path(p) for p in cfg.paths], cfg.ignore_patterns) if cfg.ignore_patterns else None

    try:
        roots = resolve_paths(cfg.paths, recurse=cfg.recurse, ignore=ignore, logger=logger)
    except PathNotFound as e:
        logger.error("%s", e)
        parser.print_usage(sys.stderr)
        return 2
    except StatFailed as e:
        logger.error("%s", e)
        return 1

    if not roots:
        parser.print_usage(sys.stderr)
        return 2

    user_roots = [abspath(p) for p in cfg.paths]
    try:
        mirror_dir: Optional[Path] = check_mirror_dir(cfg.mirror_dir, user_roots)
        logger.info("Mirror : %s (%s layout, %gs delay)", mirror_dir, cfg.layout, cfg.delay_sec)
    except MirrorDirUnavailable as e:
        logger.warning("Mirroring disabled: %s", e)
        mirror_dir = None

    try:
        mapper = build_mapper(cfg.layout, user_roots)
        command = ChangeCommand(cfg.on_change, cfg.interval_sec, cfg.quiet, logger) if cfg.on_change else None
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 1

    mirror = MirrorSync(mirror_dir, mapper, delay_sec=cfg.delay_sec, logger=logger)
    source = WatchdogEventSource()
    loop = WatchLoop(
        source,
        mirror,
        halt_on_error=cfg.halt_on_error,
        quiet=cfg.quiet,
        sync_on_modify=cfg.sync_on_modify,
        ignore=ignore,
        command=command,
        logger=logger,
    )

    try:
        count = loop.register(roots)
    except WatchRegistrationFailed as e:
        logger.error("%s", e)
        source.close()
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted. Cleaning up before exiting...")
        source.close()
        return 0

    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, lambda signum, frame: loop.stop())

    logger.info("Watching %d path(s)... (Ctrl+C to stop)", count)
    try:
        return loop.run()
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)


if __name__ == "__main__":
    raise SystemExit(main())
