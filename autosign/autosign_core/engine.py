"""
SignInEngine — the per-account poll loop.

One background thread polls the open rollcalls every cooldown period and
hands each new one to the radar locator or the number searcher on its own
short-lived thread, so a slow solve never delays the next poll.

Lifecycle: IDLE → STARTING → RUNNING → STOPPING → IDLE. start() and stop()
are the only ways to move between running and stopped.
"""

import threading
from datetime import datetime
from types import MappingProxyType

from . import api
from .config import log, ConfigurationInvalid
from .constants import (
    DEFAULT_COOLDOWN_MS, HANDLER_JOIN_TIMEOUT_SEC, MAX_AUTH_RECOVERIES,
    NUMBER_ATTEMPT_TIMEOUT_MS, NUMBER_BATCH_SIZE,
)
from .http_client import build_client
from .models import OutcomeKind, RollCallKind, parse_rollcalls
from .number_search import NumberCodeSearcher
from .radar import RadarLocator
from .state import AuthState, AuthStatus, EngineStatus


class SignInEngine:

    def __init__(self, account_id, client, logger, known_points, preferred_point,
                 cooldown_ms=DEFAULT_COOLDOWN_MS, auth_state=None, log_empty_rollcall=False,
                 on_auth_expired=None, on_auth_recovered=None, clock=datetime.now,
                 batch_size=NUMBER_BATCH_SIZE, attempt_timeout_ms=NUMBER_ATTEMPT_TIMEOUT_MS,
                 max_recoveries=MAX_AUTH_RECOVERIES):
        if preferred_point not in known_points:
            raise ConfigurationInvalid(f"preferred point {preferred_point!r} is not a known point")
        self.account_id = account_id
        self.auth = auth_state or AuthState()
        self._client = client
        self._logger = logger
        self._points = MappingProxyType(dict(known_points))
        self._preferred = preferred_point
        self._cooldown_ms = cooldown_ms
        self._log_empty = log_empty_rollcall
        self._on_auth_expired = on_auth_expired
        self._on_auth_recovered = on_auth_recovered
        self._clock = clock
        self._max_recoveries = max_recoveries

        self._lock = threading.Lock()
        self._status = EngineStatus.IDLE
        self._stop_event = threading.Event()
        self._loop_thread = None
        self._handlers = {}        # rollcall id → handler thread
        self._finished = set()     # rollcall ids given up on or answered
        self._req_num = 0
        self._recoveries = 0
        # Whether the latest auth failure went out as a notification
        self._failure_notified = False

        self._locator = RadarLocator(
            client, logger, self._points, preferred_point,
            on_auth_expired=self._handle_auth_expired, cancel_event=self._stop_event,
        )
        self._searcher = NumberCodeSearcher(
            client, logger, on_auth_expired=self._handle_auth_expired,
            batch_size=batch_size, attempt_timeout_ms=attempt_timeout_ms,
            cancel_event=self._stop_event,
        )

    # ─── Public API ──────────────────────────────────────────

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._status is EngineStatus.RUNNING

    def get_status(self):
        return {
            "running": self.running,
            "preferredPoint": self._preferred,
            "cooldownMs": self._cooldown_ms,
            "state": self._status.value,
            "authStatus": self.auth.status.value,
        }

    def start(self):
        """Start the poll loop. Returns False if already running, starting, or stopping."""
        with self._lock:
            if self._status is not EngineStatus.IDLE:
                return False
            self._status = EngineStatus.STARTING
            self._stop_event.clear()
        try:
            self._prepare_auth()
            thread = threading.Thread(
                target=self._run_loop, name=f"autosign-{self.account_id}", daemon=True,
            )
            with self._lock:
                if self._status is not EngineStatus.STARTING:
                    # stop() arrived while starting
                    self._status = EngineStatus.IDLE
                    return False
                self._loop_thread = thread
                self._status = EngineStatus.RUNNING
                thread.start()
        except Exception:
            with self._lock:
                self._status = EngineStatus.IDLE
                self._loop_thread = None
            raise
        self._logger.info("Auto sign-in started; the first request will log in")
        return True

    def stop(self):
        """Stop and wait for the loop and in-flight handlers. No-op when idle."""
        with self._lock:
            if self._status is EngineStatus.IDLE and self._loop_thread is None:
                return False
            self._status = EngineStatus.STOPPING
            self._stop_event.set()

        self.wait_idle()
        self._join_handlers()

        with self._lock:
            self._loop_thread = None
            self._status = EngineStatus.IDLE
        self._logger.info("Auto sign-in stopped")
        return True

    def wait_idle(self, timeout=None):
        """Block until the poll loop thread exits. Returns False on timeout."""
        thread = self._loop_thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ─── Poll loop ───────────────────────────────────────────

    def _run_loop(self):
        cooldown = self._cooldown_ms / 1000.0
        log.info("[%s] Poll loop started (cooldown=%dms)", self.account_id, self._cooldown_ms)
        try:
            while not self._stop_event.is_set():
                self._req_num += 1
                try:
                    if not self._poll_once(self._req_num):
                        break
                except Exception as e:
                    log.error("[%s] Unexpected error in poll loop: %s", self.account_id, e, exc_info=True)
                # A stop request ends the wait at once
                if self._stop_event.wait(cooldown):
                    break
        finally:
            with self._lock:
                if self._loop_thread is threading.current_thread():
                    self._loop_thread = None
                if self._status is EngineStatus.RUNNING:
                    self._status = EngineStatus.IDLE
            log.info("[%s] Poll loop exited", self.account_id)

    def _poll_once(self, req_id):
        """One tick. Returns False when the loop must halt."""
        if not self.auth.can_proceed and not self._try_recover_auth():
            self._halt()
            return False

        outcome = api.list_rollcalls(self._client)

        if outcome.auth_expired:
            self._handle_auth_expired(outcome.detail)
            if not self._try_recover_auth():
                self._halt()
                return False
            return True

        if outcome.kind is OutcomeKind.TRANSPORT_ERROR:
            # Network blips are frequent; keep them out of the notification channel.
            log.info("[%s] (Req #%d) Failed to fetch rollcalls: %s",
                     self.account_id, req_id, outcome.detail)
            return True

        self._confirm_auth()

        try:
            rollcalls = parse_rollcalls(outcome.body)
        except ValueError as e:
            self._logger.info(f"(Req #{req_id}) Unreadable rollcall list: {e}; body: {str(outcome.body)[:200]}")
            return True

        if not rollcalls:
            if self._log_empty:
                self._logger.info(f"(Req #{req_id}) No rollcalls found.")
            else:
                log.debug("[%s] (Req #%d) No rollcalls found.", self.account_id, req_id)
            return True

        self._logger.info(f"(Req #{req_id}) Found {len(rollcalls)} rollcalls.")
        for rollcall in rollcalls:
            self._dispatch(rollcall)
        return True

    def _halt(self):
        self._notice("Login expired and could not be recovered; auto sign-in paused.")

    def _notice(self, message):
        """Warn once per notified failure; repeats within the interval stay local."""
        if self._failure_notified:
            self._logger.warn(message)
        else:
            self._logger.info(message)

    # ─── Dispatch ────────────────────────────────────────────

    def _dispatch(self, rollcall):
        if rollcall.answered:
            self._logger.info(f"Rollcall #{rollcall.id} is already on call.")
            return
        if rollcall.kind is RollCallKind.OTHER:
            self._logger.info(f"Rollcall #{rollcall.id} is neither radar nor number; ignored.")
            return

        with self._lock:
            if rollcall.id in self._finished:
                return
            current = self._handlers.get(rollcall.id)
            if (current is not None and current.is_alive()) or self._searcher.in_progress(rollcall.id):
                log.debug("[%s] Rollcall #%s already being handled", self.account_id, rollcall.id)
                return
            thread = threading.Thread(
                target=self._handle, args=(rollcall,),
                name=f"rollcall-{rollcall.id}", daemon=True,
            )
            self._handlers[rollcall.id] = thread
        self._logger.info(f"Detected rollcall: {rollcall.course_title} - {rollcall.title}".strip())
        thread.start()

    def _handle(self, rollcall):
        try:
            if rollcall.kind is RollCallKind.RADAR:
                self._logger.info(f"Answering radar rollcall {rollcall.describe()}")
                result = self._locator.locate(rollcall.id)
            else:
                self._logger.info(f"Searching code for number rollcall {rollcall.describe()}")
                result = self._searcher.search(rollcall.id)
            if result is not None and not result.aborted:
                with self._lock:
                    self._finished.add(rollcall.id)
        except Exception as e:
            log.error("[%s] Handler for rollcall #%s crashed: %s",
                      self.account_id, rollcall.id, e, exc_info=True)
        finally:
            with self._lock:
                if self._handlers.get(rollcall.id) is threading.current_thread():
                    del self._handlers[rollcall.id]

    def _join_handlers(self):
        with self._lock:
            threads = list(self._handlers.values())
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(HANDLER_JOIN_TIMEOUT_SEC)
                if thread.is_alive():
                    log.warning("[%s] Handler %s still running after stop", self.account_id, thread.name)

    # ─── Auth ────────────────────────────────────────────────

    def _prepare_auth(self):
        """
        Called on every start. A persisted Expired state gets a fresh try
        that only turns Active once a request succeeds.
        """
        self._recoveries = 0
        if self.auth.status is AuthStatus.EXPIRED:
            if self._client.can_recover:
                self._client.reset()
            self.auth.begin_recovery()

    def _handle_auth_expired(self, reason=""):
        should_notify = self.auth.record_failure(self._clock())
        self._failure_notified = should_notify
        if should_notify:
            msg = "Login has expired; please re-authorize."
            if reason:
                msg += f" Reason: {reason}"
            self._logger.warn(msg)
        else:
            log.info("[%s] Login expired again (%s); already notified at %s",
                     self.account_id, reason, self.auth.last_notified_at)
        if self._on_auth_expired is not None:
            try:
                self._on_auth_expired(self.auth, reason)
            except Exception as e:
                log.error("[%s] on_auth_expired callback failed: %s", self.account_id, e)

    def _try_recover_auth(self):
        """One client rebuild per detected expiry, bounded by max_recoveries."""
        if not self._client.can_recover:
            self._notice("Session token rejected; re-authorize out of band to resume.")
            return False
        if self._recoveries >= self._max_recoveries:
            log.warning("[%s] Gave up after %d login rebuilds", self.account_id, self._recoveries)
            return False
        self._recoveries += 1
        self._client.reset()
        self.auth.begin_recovery()
        self._logger.info(f"Rebuilt login session (attempt {self._recoveries}/{self._max_recoveries}).")
        return True

    def _confirm_auth(self):
        self._recoveries = 0
        if self.auth.confirm():
            self._logger.info("Login confirmed working again.")
            if self._on_auth_recovered is not None:
                try:
                    self._on_auth_recovered(self.auth)
                except Exception as e:
                    log.error("[%s] on_auth_recovered callback failed: %s", self.account_id, e)


def create_engine(account, known_points, logger, login=None, **kwargs):
    """
    Engine for an AccountConfig. Raises ConfigurationInvalid; nothing is
    created when the account's credentials don't fit its auth mode.
    """
    client = build_client(account, login=login)
    auth = AuthState(
        status=AuthStatus.EXPIRED if account.auth_expired else AuthStatus.ACTIVE,
        last_failure_at=account.last_auth_fail_at,
        last_notified_at=account.last_notify_at,
    )
    return SignInEngine(
        account.id, client, logger, known_points, account.preferred_point,
        cooldown_ms=account.cooldown_ms, auth_state=auth,
        log_empty_rollcall=account.log_empty_rollcall, **kwargs,
    )
