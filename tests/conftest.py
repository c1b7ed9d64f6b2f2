from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import pytest

from shadow_watch import EventSource, WatchRegistrationFailed


class FakeEventSource(EventSource):
    """In-memory EventSource: tests publish events by hand."""

    def __init__(self, fail_on: tuple[Path, ...] = ()):
        super().__init__()
        self.watched: list[Path] = []
        self.fail_on = set(fail_on)
        self.closed = False

    def watch(self, path: Path) -> None:
        if path in self.fail_on:
            raise WatchRegistrationFailed(f"cannot watch {path}")
        self.watched.append(path)

    def close(self) -> None:
        self.closed = True


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture()
def logger() -> logging.Logger:
    # outside the "shadow_watch" hierarchy so records reach caplog
    return logging.getLogger("tests.shadow_watch")


@pytest.fixture()
def wait_for():
    return _wait_for


@pytest.fixture()
def fake_source_cls():
    return FakeEventSource


@pytest.fixture()
def fake_source() -> FakeEventSource:
    return FakeEventSource()


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture()
def backup_dir(tmp_path: Path) -> Path:
    backup = tmp_path / "backup"
    backup.mkdir()
    return backup


@pytest.fixture()
def run_in_thread():
    """Run a WatchLoop on a worker thread; yields a starter returning (thread, result)."""
    started: list[threading.Thread] = []
    loops = []

    def start(loop):
        result: dict[str, int] = {}

        def target() -> None:
            result["code"] = loop.run()

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        started.append(thread)
        loops.append(loop)
        return thread, result

    yield start

    for loop in loops:
        loop.stop()
    for thread in started:
        thread.join(timeout=5)
