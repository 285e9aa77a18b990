from __future__ import annotations

import json
import threading
import time
from datetime import datetime

import pytest
from requests.structures import CaseInsensitiveDict

from autosign_core.constants import ROLLCALLS_PATH


# ---------- Fakes ----------


class FakeResponse:
    """Just enough of requests.Response for api.py."""

    def __init__(self, status_code=200, body=None, text=None, headers=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})

    def json(self):
        return json.loads(self.text)


class FakeClient:
    """
    Scripted stand-in for CourseClient. `handler(method, path, kwargs)`
    returns a FakeResponse or raises; every call is recorded.
    """

    def __init__(self, handler, can_recover=False):
        self._handler = handler
        self.can_recover = can_recover
        self.calls = []
        self.resets = 0
        self._lock = threading.Lock()

    def request(self, method, path, **kwargs):
        with self._lock:
            self.calls.append((method, path, kwargs))
        return self._handler(method, path, kwargs)

    def reset(self):
        self.resets += 1
        return self.can_recover

    def calls_to(self, path):
        with self._lock:
            return [c for c in self.calls if c[1] == path]


class RecordingLogger:
    """AccountLogger double that keeps every message by severity."""

    def __init__(self):
        self.records = []
        self._lock = threading.Lock()

    def _add(self, level, message):
        with self._lock:
            self.records.append((level, message))

    def info(self, message):
        self._add("info", message)

    def success(self, message):
        self._add("success", message)

    def warn(self, message):
        self._add("warn", message)

    def error(self, message):
        self._add("error", message)

    def event(self, message):
        self._add("event", message)

    def messages(self, level):
        with self._lock:
            return [m for lvl, m in self.records if lvl == level]

    @property
    def notifications(self):
        with self._lock:
            return [m for lvl, m in self.records if lvl != "info"]


class Clock:
    """Settable clock for schedulers and auth state."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now


def rollcalls_response(*items):
    return FakeResponse(200, {"rollcalls": list(items)})


def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ---------- Shared fixtures ----------


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def empty_client() -> FakeClient:
    """Client whose rollcall list is always empty."""

    def handler(method, path, kwargs):
        assert path == ROLLCALLS_PATH
        return rollcalls_response()

    return FakeClient(handler)


@pytest.fixture
def points():
    """Four campus points around a hidden location."""
    return {
        "ZJGD1": (120.089136, 30.302331),
        "ZJGX1": (120.085042, 30.30173),
        "ZJGB1": (120.077135, 30.305142),
        "ZJG4": (120.073427, 30.299757),
    }
