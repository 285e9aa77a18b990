"""
Entry point, per-account wiring, and auto-restart wrapper.
"""

import argparse
import signal
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .constants import (
    AUTOSIGN_VERSION, DEFAULT_SERVER_URL, RESTART_BACKOFF_MAX_SEC, RESTART_BACKOFF_STEP_SEC,
    RESTART_BOOTLOOP_CRASHES, RESTART_BOOTLOOP_WAIT_SEC, RESTART_STABLE_RUN_SEC,
)
from .config import (
    log, setup_logging, load_config, known_points_from_config,
    AccountConfig, ConfigStore, ConfigurationInvalid, CONFIG_FILE,
)
from .engine import SignInEngine, create_engine
from .notify import AccountLogger, dingtalk_notifier, fan_out
from .scheduler import WindowScheduler
from .state import WindowConfig


@dataclass
class Account:
    config: AccountConfig
    logger: AccountLogger
    engine: SignInEngine
    scheduler: WindowScheduler

    def shutdown(self):
        self.scheduler.stop()
        self.engine.stop()


def _iso(value):
    return value.isoformat(timespec="seconds") if isinstance(value, datetime) else None


def build_account(account_cfg, known_points, store, control_notify=None, login=None):
    """
    Engine + scheduler for one account, started according to its settings.
    Returns None (and records the account as expired) when the credentials
    don't fit the auth mode.
    """
    notify = fan_out(
        dingtalk_notifier(account_cfg.dingtalk_webhook, account_cfg.dingtalk_secret),
        control_notify,
    )
    logger = AccountLogger(account_cfg.id, account_cfg.username, notify)

    def on_auth_expired(auth, reason):
        store.update_account(
            account_cfg.id,
            authExpired=True,
            lastAuthFailAt=_iso(auth.last_failure_at),
            lastNotifyAt=_iso(auth.last_notified_at),
        )

    def on_auth_recovered(auth):
        store.update_account(account_cfg.id, authExpired=False, lastAuthFailAt=None)

    try:
        engine = create_engine(
            account_cfg, known_points, logger, login=login,
            on_auth_expired=on_auth_expired, on_auth_recovered=on_auth_recovered,
        )
    except ConfigurationInvalid as e:
        logger.error(f"Cannot initialise auto sign-in: {e}")
        store.update_account(account_cfg.id, authExpired=True)
        return None

    window = WindowConfig.from_hhmm(
        account_cfg.window_start, account_cfg.window_end, account_cfg.enable_schedule,
    )
    scheduler = WindowScheduler(engine, window, logger)
    scheduler.start()
    if not account_cfg.enable_schedule and account_cfg.enabled:
        engine.start()
    return Account(account_cfg, logger, engine, scheduler)


def load_accounts(config, store, login=None):
    known_points = known_points_from_config(config)
    server_url = config.get("serverUrl") or DEFAULT_SERVER_URL
    control_notify = dingtalk_notifier(config.get("controlWebhook"), config.get("controlSecret"))

    accounts = []
    for entry in config.get("accounts", []):
        try:
            account_cfg = AccountConfig.from_dict(entry, known_points, server_url)
        except ConfigurationInvalid as e:
            log.error("Skipping account: %s", e)
            continue
        account = build_account(account_cfg, known_points, store, control_notify, login)
        if account is not None:
            log.info("Loaded account %s (%s, schedule=%s)", account_cfg.id,
                     account_cfg.auth_mode, account_cfg.enable_schedule)
            accounts.append(account)
    return accounts


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Autonomous rollcall sign-in")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE,
                        help="JSON config file (default: %(default)s)")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Log file (default: autosign.log beside the config)")
    return parser.parse_args(argv)


def main(argv=None):
    """Primary entry point. Returns a process exit code."""
    args = parse_args(argv)
    setup_logging(args.log_file or args.config.with_name("autosign.log"))
    log.info("Auto sign-in v%s", AUTOSIGN_VERSION)

    config = load_config(args.config)
    if not config:
        log.error("No usable config at %s", args.config)
        return 1

    store = ConfigStore(args.config)
    try:
        accounts = load_accounts(config, store)
    except ConfigurationInvalid as e:
        log.error("Config rejected: %s", e)
        return 1
    if not accounts:
        log.error("No account could be started")
        return 1

    shutdown = threading.Event()

    def request_shutdown(signum, frame):
        log.info("Signal %d received, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGTERM, request_shutdown)
    try:
        while not shutdown.wait(1.0):
            pass
    finally:
        for account in accounts:
            account.shutdown()
        log.info("All accounts stopped.")
    return 0


def restart_delay(crash_count):
    """Seconds to wait before restart number `crash_count` (1-based)."""
    if crash_count >= RESTART_BOOTLOOP_CRASHES:
        return RESTART_BOOTLOOP_WAIT_SEC
    return min(RESTART_BACKOFF_STEP_SEC * crash_count, RESTART_BACKOFF_MAX_SEC)


def run_with_auto_restart(argv=None, sleep=time.sleep):
    """
    Run main() and restart it after a crash. A run that lasted at least
    RESTART_STABLE_RUN_SEC starts the crash count over.
    """
    crashes = 0
    while True:
        started = time.monotonic()
        try:
            return main(argv)
        except KeyboardInterrupt:
            log.info("Stopped by user.")
            return 0
        except Exception as e:
            uptime = time.monotonic() - started
            log.error("main() crashed after %.0fs: %s", uptime, e, exc_info=True)
            crashes = 1 if uptime >= RESTART_STABLE_RUN_SEC else crashes + 1
            delay = restart_delay(crashes)
            if crashes >= RESTART_BOOTLOOP_CRASHES:
                log.warning("Crash loop detected (%d crashes)", crashes)
            log.info("Restarting in %ds (crash %d)", delay, crashes)
            sleep(delay)


if __name__ == "__main__":
    sys.exit(run_with_auto_restart())
