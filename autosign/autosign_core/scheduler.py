"""
WindowScheduler — starts and stops one engine by a daily time window.

A background thread ticks every SCHEDULER_TICK_SEC and right after any
window update. Manual start/stop installs an override that holds the
manual state until the next window start, after which automatic control
resumes. A window whose start equals its end never triggers anything.
"""

import threading
from dataclasses import dataclass
from datetime import datetime

from .config import log, parse_hhmm
from .constants import SCHEDULER_TICK_SEC, SETTLE_DELAY_MS
from .state import OverrideMode, WindowConfig


@dataclass
class ControlResult:
    ok: bool
    need_confirm: bool = False
    message: str = ""


@dataclass
class WindowChange:
    was_enabled: bool
    now_enabled: bool
    time_changed: bool
    in_window: bool


class WindowScheduler:

    def __init__(self, engine, window: WindowConfig, logger,
                 tick_sec=SCHEDULER_TICK_SEC, settle_delay_ms=SETTLE_DELAY_MS,
                 clock=datetime.now):
        self.engine = engine
        self.window = window
        self._logger = logger
        self._tick_sec = tick_sec
        self._settle_sec = settle_delay_ms / 1000.0
        self._clock = clock

        self._lock = threading.Lock()
        self._transitioning = False
        self._halt = threading.Event()
        self._wake = threading.Event()
        self._thread = None

    # ─── Timer ───────────────────────────────────────────────

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._halt.clear()
        self._thread = threading.Thread(target=self._run, name="window-scheduler", daemon=True)
        self._thread.start()

    def stop(self):
        self._halt.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    @property
    def timer_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._halt.is_set():
            self._wake.clear()
            try:
                self.tick()
            except Exception as e:
                log.error("Scheduler tick failed: %s", e, exc_info=True)
            self._wake.wait(self._tick_sec)

    # ─── Evaluation ──────────────────────────────────────────

    def is_in_window(self, now=None) -> bool:
        return self.window.is_in_window(now or self._clock())

    def next_window_start(self, now=None) -> datetime:
        return self.window.next_start(now or self._clock())

    def tick(self, ignore_override=False):
        """
        Evaluate the window once. Returns "started" / "stopped" when a
        transition ran, else None.
        """
        now = self._clock()
        with self._lock:
            if not self.window.automatic:
                return None
            if self.window.clear_override_if_expired(now):
                log.info("Schedule override expired; automatic control resumed")
            if not ignore_override and self.window.override_active(now):
                return None
            should_run = self.window.is_in_window(now)
            if should_run == self.engine.running or self._transitioning:
                return None
            self._transitioning = True
            override = (self.window.override_mode, self.window.override_until)
        try:
            return self._transition_to(should_run, override if ignore_override else None)
        finally:
            with self._lock:
                self._transitioning = False

    def _transition_to(self, should_run, tolerated_override=None):
        if self.engine.running:
            self.engine.stop()
            self._logger.event("[Schedule] Stopped by time window")
        if not should_run:
            return "stopped"
        # Give the server time to release the old session before logging in again
        if self._settle_sec > 0 and self._halt.wait(self._settle_sec):
            return None
        if not self._still_wanted(tolerated_override):
            log.info("Schedule changed during the settle delay; start skipped")
            return None
        if self.engine.start():
            self._logger.event("[Schedule] Started by time window")
            return "started"
        return None

    def _still_wanted(self, tolerated_override):
        """Re-check a pending start against the window and any override set meanwhile."""
        now = self._clock()
        with self._lock:
            if not self.window.automatic or not self.window.is_in_window(now):
                return False
            if not self.window.override_active(now):
                return True
            current = (self.window.override_mode, self.window.override_until)
            return current == tolerated_override

    def apply_now(self):
        """Apply the window immediately, e.g. after a config change."""
        if not self.window.enabled:
            return {"action": "none", "reason": "schedule_disabled"}
        if not self.window.automatic:
            return {"action": "none", "reason": "window_disabled"}
        action = self.tick(ignore_override=True)
        if action:
            return {"action": action, "reason": "schedule_applied"}
        if self._transitioning:
            return {"action": "none", "reason": "transition_in_progress"}
        reason = "already_running" if self.engine.running else "already_stopped"
        return {"action": "none", "reason": reason}

    # ─── Overrides ───────────────────────────────────────────

    def pause_until_next_window_start(self):
        """Hold the current manual state until the window next opens."""
        until = self.next_window_start()
        with self._lock:
            self.window.set_override(OverrideMode.FORCE_RUN, until)
        log.info("Schedule override (forceRun) until %s", until.isoformat(timespec="minutes"))

    def pause_until_tomorrow(self):
        """Keep the engine from auto-starting until the next window start."""
        until = self.next_window_start()
        with self._lock:
            self.window.set_override(OverrideMode.SUPPRESS_START, until)
        log.info("Schedule override (suppressStart) until %s", until.isoformat(timespec="minutes"))

    def clear_override(self):
        with self._lock:
            self.window.clear_override()

    def update_window(self, start=None, end=None, enabled=None) -> WindowChange:
        """
        Change window bounds and/or the enable flag. Any manual override is
        dropped, and the timer re-evaluates straight away.
        """
        new_start = parse_hhmm(start) if start else None
        new_end = parse_hhmm(end) if end else None
        with self._lock:
            was_enabled = self.window.enabled
            old_bounds = (self.window.start_minute, self.window.end_minute)
            if enabled is not None:
                self.window.enabled = bool(enabled)
            if new_start is not None:
                self.window.start_minute = new_start
            if new_end is not None:
                self.window.end_minute = new_end
            self.window.clear_override()
            change = WindowChange(
                was_enabled=was_enabled,
                now_enabled=self.window.enabled,
                time_changed=old_bounds != (self.window.start_minute, self.window.end_minute),
                in_window=self.window.is_in_window(self._clock()),
            )
        self._wake.set()
        log.info("Schedule updated: %s-%s enabled=%s",
                 self.window.start_hhmm, self.window.end_hhmm, self.window.enabled)
        return change

    # ─── Manual control ──────────────────────────────────────

    def manual_start(self, force=False) -> ControlResult:
        """
        Start by hand. Outside an enabled window this needs force=True and
        then keeps running until the next window start.
        """
        if self.window.automatic:
            if self.is_in_window():
                self.clear_override()
                self._logger.info("[Manual start] Inside the schedule window; normal scheduling continues")
            elif not force:
                self._logger.warn("[Manual start] Outside the schedule window; confirmation required")
                return ControlResult(
                    ok=False, need_confirm=True,
                    message="Outside the schedule window. If confirmed, the task keeps running "
                            "until the next window start, then automatic scheduling resumes.",
                )
            else:
                self.pause_until_next_window_start()
                self._logger.info("[Manual start] Outside the schedule window; scheduling paused until next window start")
        self.engine.start()
        self._logger.event("[Manual start] Task started by user")
        return ControlResult(ok=True)

    def manual_stop(self, force=False) -> ControlResult:
        """
        Stop by hand. Inside an enabled window this needs force=True; either
        way automatic control is paused until the next window start.
        """
        if self.window.automatic:
            in_window = self.is_in_window()
            if in_window and not force:
                self._logger.warn("[Manual stop] Inside the schedule window; confirmation required")
                return ControlResult(
                    ok=False, need_confirm=True,
                    message="Inside the schedule window. If confirmed, automatic scheduling is "
                            "paused until the next window start.",
                )
            self.pause_until_next_window_start()
            self._logger.info("[Manual stop] Scheduling paused until next window start")
        self.engine.stop()
        self._logger.event("[Manual stop] Task stopped by user")
        return ControlResult(ok=True)

    def get_status(self):
        until = self.window.override_until
        return {
            "enableSchedule": self.window.enabled,
            "windowStart": self.window.start_hhmm,
            "windowEnd": self.window.end_hhmm,
            "timerRunning": self.timer_running,
            "overrideMode": self.window.override_mode.value,
            "overrideUntil": until.isoformat() if until else None,
        }
