"""
State objects for one account: auth status, engine lifecycle, schedule window.

AuthState is written from the poll thread and from solver threads, so its
mutations take a lock. WindowConfig is only touched by its WindowScheduler.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from .config import parse_hhmm, format_hhmm
from .constants import AUTH_NOTIFY_INTERVAL_SEC


class AuthStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class EngineStatus(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class OverrideMode(Enum):
    NONE = "none"
    SUPPRESS_START = "suppressStart"
    FORCE_RUN = "forceRun"


@dataclass
class AuthState:
    status: AuthStatus = AuthStatus.ACTIVE
    last_failure_at: datetime = None
    last_notified_at: datetime = None
    # Expired, but a rebuilt client is allowed to try; cleared by confirm().
    recovering: bool = False
    notify_interval: timedelta = timedelta(seconds=AUTH_NOTIFY_INTERVAL_SEC)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status is AuthStatus.ACTIVE

    @property
    def can_proceed(self) -> bool:
        """Whether the poll loop may issue requests."""
        return self.status is AuthStatus.ACTIVE or self.recovering

    def record_failure(self, now: datetime) -> bool:
        """
        Mark the login as expired. Returns True when this failure should be
        announced externally, i.e. nothing was announced within notify_interval.
        """
        with self._lock:
            self.status = AuthStatus.EXPIRED
            self.recovering = False
            self.last_failure_at = now
            if self.last_notified_at is None or now - self.last_notified_at > self.notify_interval:
                self.last_notified_at = now
                return True
            return False

    def begin_recovery(self):
        with self._lock:
            if self.status is AuthStatus.EXPIRED:
                self.recovering = True

    def confirm(self) -> bool:
        """A request succeeded with the current login. Returns True on an Expired→Active edge."""
        with self._lock:
            if self.status is AuthStatus.ACTIVE:
                return False
            self.status = AuthStatus.ACTIVE
            self.recovering = False
            self.last_failure_at = None
            return True


def minute_of_day(now: datetime) -> int:
    return now.hour * 60 + now.minute


@dataclass
class WindowConfig:
    """Daily run window in local minutes. start == end means manual control only."""
    start_minute: int
    end_minute: int
    enabled: bool = False
    override_mode: OverrideMode = OverrideMode.NONE
    override_until: datetime = None

    @classmethod
    def from_hhmm(cls, start, end, enabled=False):
        return cls(parse_hhmm(start), parse_hhmm(end), enabled)

    @property
    def start_hhmm(self) -> str:
        return format_hhmm(self.start_minute)

    @property
    def end_hhmm(self) -> str:
        return format_hhmm(self.end_minute)

    @property
    def automatic(self) -> bool:
        """Whether the window drives start/stop at all."""
        return self.enabled and self.start_minute != self.end_minute

    def is_in_window(self, now: datetime) -> bool:
        start, end = self.start_minute, self.end_minute
        current = minute_of_day(now)
        if start == end:
            return False
        if start < end:
            return start <= current < end
        # Overnight, e.g. 22:00 → 07:00
        return current >= start or current < end

    def next_start(self, now: datetime) -> datetime:
        """The next instant strictly after now at which the window opens."""
        candidate = now.replace(
            hour=self.start_minute // 60, minute=self.start_minute % 60,
            second=0, microsecond=0,
        )
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    # ── Override lifecycle ────────────────────────────────────

    def set_override(self, mode: OverrideMode, until: datetime):
        self.override_mode = mode
        self.override_until = until

    def clear_override(self):
        self.override_mode = OverrideMode.NONE
        self.override_until = None

    def clear_override_if_expired(self, now: datetime) -> bool:
        if self.override_until is not None and now >= self.override_until:
            self.clear_override()
            return True
        return False

    def override_active(self, now: datetime) -> bool:
        return (
            self.override_mode is not OverrideMode.NONE
            and self.override_until is not None
            and now < self.override_until
        )
