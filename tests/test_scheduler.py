from __future__ import annotations

import threading
from datetime import datetime, timedelta

from autosign_core.scheduler import WindowScheduler
from autosign_core.state import OverrideMode, WindowConfig

from conftest import Clock, wait_for


class FakeEngine:
    """Engine double: start()/stop() flip `running` and are counted."""

    def __init__(self, running=False):
        self.running = running
        self.starts = 0
        self.stops = 0
        self.stop_gate = None

    def start(self):
        if self.running:
            return False
        self.starts += 1
        self.running = True
        return True

    def stop(self):
        if self.stop_gate is not None:
            self.stop_gate.wait(5)
        if not self.running:
            return False
        self.stops += 1
        self.running = False
        return True


def _at(hhmm, day=datetime(2026, 3, 2)):
    hours, minutes = map(int, hhmm.split(":"))
    return day.replace(hour=hours, minute=minutes)


def _scheduler(logger, start="08:00", end="22:00", enabled=True, now="10:00", engine=None,
               settle_delay_ms=0):
    clock = Clock(_at(now))
    engine = engine or FakeEngine()
    window = WindowConfig.from_hhmm(start, end, enabled=enabled)
    scheduler = WindowScheduler(engine, window, logger, tick_sec=0.01,
                                settle_delay_ms=settle_delay_ms, clock=clock)
    return scheduler, engine, clock


# ---------- Automatic control ----------


def test_disabled_schedule_never_acts(logger):
    scheduler, engine, _ = _scheduler(logger, enabled=False)
    assert scheduler.tick() is None
    assert engine.starts == 0


def test_starts_inside_and_stops_outside_window(logger):
    scheduler, engine, clock = _scheduler(logger, now="10:00")
    assert scheduler.tick() == "started"
    assert engine.running
    assert scheduler.tick() is None

    clock.now = _at("22:00")
    assert scheduler.tick() == "stopped"
    assert not engine.running
    assert engine.stops == 1

    events = logger.messages("event")
    assert "[Schedule] Started by time window" in events
    assert "[Schedule] Stopped by time window" in events


def test_overnight_window(logger):
    scheduler, engine, clock = _scheduler(logger, start="22:00", end="07:00", now="23:30")
    assert scheduler.tick() == "started"
    clock.now = _at("06:59") + timedelta(days=1)
    assert scheduler.tick() is None
    clock.now = _at("07:00") + timedelta(days=1)
    assert scheduler.tick() == "stopped"


def test_equal_bounds_never_transition(logger):
    scheduler, engine, clock = _scheduler(logger, start="09:00", end="09:00", now="09:00")
    for hhmm in ("00:00", "09:00", "09:01", "23:59"):
        clock.now = _at(hhmm)
        assert scheduler.tick() is None
    assert engine.starts == 0 and engine.stops == 0


def test_equal_bounds_do_not_stop_manual_run(logger):
    scheduler, engine, _ = _scheduler(logger, start="09:00", end="09:00", engine=FakeEngine(running=True))
    assert scheduler.tick() is None
    assert engine.running


def test_equal_bounds_survive_update_and_apply(logger):
    scheduler, engine, _ = _scheduler(logger, start="09:00", end="09:00", enabled=False,
                                      engine=FakeEngine(running=True))
    scheduler.update_window(enabled=True)
    assert scheduler.tick() is None
    assert scheduler.apply_now() == {"action": "none", "reason": "window_disabled"}
    assert engine.running and engine.stops == 0


def test_equal_bounds_leave_manual_control_unconfirmed(logger):
    scheduler, engine, _ = _scheduler(logger, start="09:00", end="09:00")
    assert scheduler.manual_start().ok
    assert engine.running
    assert scheduler.manual_stop().ok
    assert scheduler.window.override_mode is OverrideMode.NONE


# ---------- Manual control and overrides ----------


def test_manual_stop_inside_window_needs_confirmation(logger):
    scheduler, engine, clock = _scheduler(logger, now="10:00")
    scheduler.tick()

    result = scheduler.manual_stop()
    assert not result.ok and result.need_confirm
    assert engine.running

    result = scheduler.manual_stop(force=True)
    assert result.ok
    assert not engine.running
    assert scheduler.window.override_mode is OverrideMode.FORCE_RUN
    assert scheduler.window.override_until == _at("08:00") + timedelta(days=1)

    # Still inside today's window: the override keeps it stopped
    clock.now = _at("15:00")
    assert scheduler.tick() is None
    assert not engine.running

    # Next window start: override expires, automatic control resumes
    clock.now = _at("08:00") + timedelta(days=1)
    assert scheduler.tick() == "started"
    assert scheduler.window.override_mode is OverrideMode.NONE


def test_manual_start_outside_window(logger):
    scheduler, engine, clock = _scheduler(logger, now="23:00")

    result = scheduler.manual_start()
    assert result.need_confirm and not result.ok
    assert not engine.running

    result = scheduler.manual_start(force=True)
    assert result.ok and engine.running
    assert scheduler.window.override_until == _at("08:00") + timedelta(days=1)

    clock.now = _at("23:30")
    assert scheduler.tick() is None
    assert engine.running


def test_manual_start_inside_window_clears_override(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00")
    scheduler.pause_until_tomorrow()
    assert scheduler.window.override_mode is OverrideMode.SUPPRESS_START

    result = scheduler.manual_start()
    assert result.ok and engine.running
    assert scheduler.window.override_mode is OverrideMode.NONE


def test_pause_until_tomorrow_suppresses_auto_start(logger):
    scheduler, engine, clock = _scheduler(logger, now="10:00")
    scheduler.pause_until_tomorrow()
    assert scheduler.tick() is None
    assert not engine.running

    clock.now = _at("08:00") + timedelta(days=1)
    assert scheduler.tick() == "started"


def test_manual_control_without_schedule(logger):
    scheduler, engine, _ = _scheduler(logger, enabled=False)
    assert scheduler.manual_start().ok
    assert engine.running
    assert scheduler.manual_stop().ok
    assert not engine.running
    assert scheduler.window.override_mode is OverrideMode.NONE


def test_apply_now_ignores_override(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00")
    scheduler.pause_until_tomorrow()
    assert scheduler.apply_now() == {"action": "started", "reason": "schedule_applied"}
    assert scheduler.apply_now() == {"action": "none", "reason": "already_running"}

    scheduler.update_window(enabled=False)
    assert scheduler.apply_now() == {"action": "none", "reason": "schedule_disabled"}


def test_update_window_clears_override_and_reports_change(logger):
    scheduler, engine, _ = _scheduler(logger, enabled=False, now="10:00")
    scheduler.pause_until_tomorrow()

    change = scheduler.update_window(start="09:00", end="18:00", enabled=True)
    assert change.was_enabled is False
    assert change.now_enabled is True
    assert change.time_changed is True
    assert change.in_window is True
    assert scheduler.window.override_mode is OverrideMode.NONE
    assert scheduler.window.start_hhmm == "09:00"

    change = scheduler.update_window(start="09:00")
    assert change.time_changed is False


# ---------- Concurrency ----------


def test_transition_in_progress_blocks_other_ticks(logger):
    engine = FakeEngine(running=True)
    engine.stop_gate = threading.Event()
    scheduler, _, _ = _scheduler(logger, now="23:00", engine=engine)

    first = []
    worker = threading.Thread(target=lambda: first.append(scheduler.tick()))
    worker.start()
    try:
        assert wait_for(lambda: scheduler._transitioning)
        assert scheduler.tick() is None
        assert scheduler.apply_now() == {"action": "none", "reason": "transition_in_progress"}
    finally:
        engine.stop_gate.set()
        worker.join(5)

    assert first == ["stopped"]
    assert engine.stops == 1


def test_manual_stop_during_settle_cancels_pending_start(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00", settle_delay_ms=500)

    outcome = []
    worker = threading.Thread(target=lambda: outcome.append(scheduler.tick()))
    worker.start()
    try:
        assert wait_for(lambda: scheduler._transitioning)
        assert scheduler.manual_stop(force=True).ok
    finally:
        worker.join(5)

    assert outcome == [None]
    assert engine.starts == 0
    assert scheduler.window.override_mode is OverrideMode.FORCE_RUN


def test_schedule_disabled_during_settle_cancels_pending_start(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00", settle_delay_ms=500)

    outcome = []
    worker = threading.Thread(target=lambda: outcome.append(scheduler.tick()))
    worker.start()
    try:
        assert wait_for(lambda: scheduler._transitioning)
        scheduler.update_window(enabled=False)
    finally:
        worker.join(5)

    assert outcome == [None]
    assert not engine.running


def test_settle_delay_precedes_start(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00", settle_delay_ms=50)
    assert scheduler.tick() == "started"
    assert engine.starts == 1


def test_timer_thread_drives_ticks(logger):
    scheduler, engine, _ = _scheduler(logger, now="10:00")
    scheduler.start()
    try:
        assert scheduler.timer_running
        assert wait_for(lambda: engine.running)
    finally:
        scheduler.stop()
    assert not scheduler.timer_running


def test_get_status(logger):
    scheduler, _, _ = _scheduler(logger, now="10:00")
    scheduler.pause_until_tomorrow()
    assert scheduler.get_status() == {
        "enableSchedule": True,
        "windowStart": "08:00",
        "windowEnd": "22:00",
        "timerRunning": False,
        "overrideMode": "suppressStart",
        "overrideUntil": (_at("08:00") + timedelta(days=1)).isoformat(),
    }
