"""
Paths, logging setup, config load/save, account config validation.
"""

import os
import sys
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .constants import (
    AUTH_MODES, AUTH_MODE_PASSWORD, AUTH_MODE_SESSION_TOKEN,
    DEFAULT_COOLDOWN_MS, DEFAULT_PREFERRED_POINT, DEFAULT_RADAR_POINTS,
    DEFAULT_SERVER_URL, DEFAULT_WINDOW_START, DEFAULT_WINDOW_END,
)


# ─── Paths ───────────────────────────────────────────────────────
# One data directory holds the config file and the log for every account.
BASE_DIR = Path(os.environ.get("AUTOSIGN_DATA_DIR", Path(__file__).parent.parent / "data"))

CONFIG_FILE = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "autosign.log"


class ConfigurationInvalid(ValueError):
    """Account or window settings that cannot produce a working engine."""


# ─── Logging ─────────────────────────────────────────────────────

SUCCESS = 25
EVENT = 22
logging.addLevelName(SUCCESS, "SUCCESS")
logging.addLevelName(EVENT, "EVENT")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

log = logging.getLogger("autosign")


def setup_logging(log_file=LOG_FILE, level=logging.INFO):
    """File + console handlers on the package logger. Safe to call twice."""
    if log.handlers:
        return log
    log.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            if log_file.exists() and log_file.stat().st_size > 1_000_000:
                log_file.write_text("")
        except OSError:
            pass
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    log.addHandler(console_handler)
    return log


# ─── Config Management ──────────────────────────────────────────

def load_config(path=CONFIG_FILE):
    """Load config from disk. Returns dict or None."""
    path = Path(path)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error("Config at %s is unreadable: %s", path, e)
            return None
    return None


def save_config(config, path=CONFIG_FILE):
    """Save config dict to disk."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)
    log.debug("Config saved to %s", path)


def parse_hhmm(value):
    """'HH:MM' → minute of day."""
    try:
        hours, minutes = (int(part) for part in str(value).split(":"))
    except ValueError:
        raise ConfigurationInvalid(f"Bad time of day: {value!r}") from None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ConfigurationInvalid(f"Time of day out of range: {value!r}")
    return hours * 60 + minutes


def format_hhmm(minute_of_day):
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


def parse_timestamp(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        log.warning("Ignoring malformed timestamp %r", value)
        return None


def known_points_from_config(config):
    """name → (lon, lat) from the config file, or the built-in campus table."""
    raw = (config or {}).get("knownPoints")
    if not raw:
        return dict(DEFAULT_RADAR_POINTS)
    points = {}
    for name, coords in raw.items():
        try:
            lon, lat = (float(c) for c in coords)
        except (TypeError, ValueError):
            raise ConfigurationInvalid(f"Known point {name!r} needs [lon, lat]") from None
        points[name] = (lon, lat)
    return points


@dataclass
class AccountConfig:
    id: str
    username: str
    auth_mode: str = AUTH_MODE_PASSWORD
    password: str = None
    session_token: str = None
    login_hook: str = None
    server_url: str = DEFAULT_SERVER_URL
    preferred_point: str = DEFAULT_PREFERRED_POINT
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    window_start: str = DEFAULT_WINDOW_START
    window_end: str = DEFAULT_WINDOW_END
    enable_schedule: bool = False
    enabled: bool = True
    log_empty_rollcall: bool = False
    dingtalk_webhook: str = None
    dingtalk_secret: str = None
    auth_expired: bool = False
    last_auth_fail_at: datetime = None
    last_notify_at: datetime = None

    @classmethod
    def from_dict(cls, data, known_points, server_url=DEFAULT_SERVER_URL):
        """
        Build and validate one account entry from the config file.
        Raises ConfigurationInvalid instead of defaulting missing credentials.
        """
        account_id = str(data.get("id") or data.get("username") or "").strip()
        if not account_id:
            raise ConfigurationInvalid("Account entry has neither id nor username")

        auth_mode = data.get("authMode", AUTH_MODE_PASSWORD)
        if auth_mode not in AUTH_MODES:
            raise ConfigurationInvalid(f"[{account_id}] unknown authMode {auth_mode!r}")

        username = data.get("username") or ""
        password = data.get("password")
        session_token = data.get("sessionToken")
        if auth_mode == AUTH_MODE_PASSWORD and not (username and password):
            raise ConfigurationInvalid(f"[{account_id}] password mode needs username and password")
        if auth_mode == AUTH_MODE_SESSION_TOKEN and not session_token:
            raise ConfigurationInvalid(f"[{account_id}] session_token mode needs a sessionToken")

        preferred = data.get("preferredPoint", DEFAULT_PREFERRED_POINT)
        if preferred not in known_points:
            raise ConfigurationInvalid(f"[{account_id}] preferredPoint {preferred!r} is not a known point")

        try:
            cooldown_ms = int(data.get("cooldownMs", DEFAULT_COOLDOWN_MS))
        except (TypeError, ValueError):
            raise ConfigurationInvalid(f"[{account_id}] cooldownMs must be an integer") from None
        if cooldown_ms < 0:
            raise ConfigurationInvalid(f"[{account_id}] cooldownMs must not be negative")

        window_start = data.get("windowStart", DEFAULT_WINDOW_START)
        window_end = data.get("windowEnd", DEFAULT_WINDOW_END)
        parse_hhmm(window_start)
        parse_hhmm(window_end)

        return cls(
            id=account_id,
            username=username,
            auth_mode=auth_mode,
            password=password,
            session_token=session_token,
            login_hook=data.get("loginHook"),
            server_url=(data.get("serverUrl") or server_url).rstrip("/"),
            preferred_point=preferred,
            cooldown_ms=cooldown_ms,
            window_start=window_start,
            window_end=window_end,
            enable_schedule=bool(data.get("enableSchedule", False)),
            enabled=bool(data.get("enabled", True)),
            log_empty_rollcall=bool(data.get("logEmptyRollcall", False)),
            dingtalk_webhook=data.get("dingTalkWebhook"),
            dingtalk_secret=data.get("dingTalkSecret"),
            auth_expired=bool(data.get("authExpired", False)),
            last_auth_fail_at=parse_timestamp(data.get("lastAuthFailAt")),
            last_notify_at=parse_timestamp(data.get("lastNotifyAt")),
        )


class ConfigStore:
    """
    Serialises writes of per-account fields back to the config file.
    Engines report auth changes from their own threads, so every
    read-modify-write goes through one lock.
    """

    def __init__(self, path=CONFIG_FILE):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self):
        with self._lock:
            return load_config(self.path) or {"accounts": []}

    def update_account(self, account_id, **fields):
        with self._lock:
            config = load_config(self.path) or {"accounts": []}
            for entry in config.get("accounts", []):
                if str(entry.get("id") or entry.get("username")) == account_id:
                    entry.update(fields)
                    save_config(config, self.path)
                    return True
        log.warning("Cannot persist %s for unknown account %s", sorted(fields), account_id)
        return False
