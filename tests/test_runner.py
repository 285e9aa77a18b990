from __future__ import annotations

import json

import pytest

from autosign_core import runner
from autosign_core.config import ConfigStore, save_config
from autosign_core.runner import load_accounts, parse_args, restart_delay


def _config():
    return {
        "serverUrl": "http://127.0.0.1:9",
        "knownPoints": {"HOME": [120.08, 30.30], "LAB": [120.09, 30.31]},
        "accounts": [
            {"id": "token", "authMode": "session_token", "sessionToken": "session=abc",
             "preferredPoint": "HOME", "enabled": False},
            {"id": "hookless", "username": "3200100001", "password": "pw",
             "preferredPoint": "HOME", "enabled": False},
            {"id": "broken", "authMode": "session_token", "sessionToken": "x",
             "preferredPoint": "ZJGD1"},
            {"id": "scheduled", "authMode": "session_token", "sessionToken": "session=def",
             "preferredPoint": "LAB", "enableSchedule": True,
             "windowStart": "03:00", "windowEnd": "03:00"},
        ],
    }


def test_load_accounts_skips_unusable_entries(tmp_path):
    path = tmp_path / "config.json"
    config = _config()
    save_config(config, path)
    store = ConfigStore(path)

    accounts = load_accounts(config, store)
    try:
        assert [a.config.id for a in accounts] == ["token", "scheduled"]
        token, scheduled = accounts
        assert not token.engine.running
        assert token.scheduler.timer_running
        assert token.config.server_url == "http://127.0.0.1:9"
        # start == end: the scheduler never starts it
        assert not scheduled.engine.running
        assert scheduled.scheduler.get_status()["enableSchedule"] is True
    finally:
        for account in accounts:
            account.shutdown()

    assert all(not a.scheduler.timer_running for a in accounts)
    saved = {a["id"]: a for a in json.loads(path.read_text(encoding="utf-8"))["accounts"]}
    # Password account without a login hook can't run; it's flagged for re-authorization
    assert saved["hookless"]["authExpired"] is True
    assert "authExpired" not in saved["token"]


def test_password_account_with_injected_login(tmp_path):
    path = tmp_path / "config.json"
    config = {"accounts": [{"id": "p", "username": "u", "password": "pw",
                            "preferredPoint": "ZJGD1", "enabled": False}]}
    save_config(config, path)

    logins = []
    accounts = load_accounts(config, ConfigStore(path), login=lambda *args: logins.append(args))
    try:
        assert len(accounts) == 1
        assert accounts[0].engine.get_status()["preferredPoint"] == "ZJGD1"
        # Login is lazy: nothing happens until the first request
        assert logins == []
    finally:
        accounts[0].shutdown()


def test_parse_args(tmp_path):
    args = parse_args(["--config", str(tmp_path / "c.json")])
    assert args.config == tmp_path / "c.json"
    assert args.log_file is None


@pytest.mark.parametrize("crashes,delay", [(1, 10), (3, 30), (6, 60), (9, 60), (10, 120), (25, 120)])
def test_restart_delay(crashes, delay):
    assert restart_delay(crashes) == delay


def test_auto_restart_backs_off_then_returns_exit_code(monkeypatch):
    results = [RuntimeError("boom"), RuntimeError("boom again"), 0]

    def fake_main(argv):
        outcome = results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(runner, "main", fake_main)
    waits = []
    assert runner.run_with_auto_restart([], sleep=waits.append) == 0
    assert waits == [10, 20]


def test_auto_restart_stops_on_keyboard_interrupt(monkeypatch):
    def fake_main(argv):
        raise KeyboardInterrupt

    monkeypatch.setattr(runner, "main", fake_main)
    assert runner.run_with_auto_restart([], sleep=lambda s: None) == 0
