"""
Number rollcalls: find the 4-digit code by trying the whole code space.

Codes go out in sequential batches; inside a batch every guess runs
concurrently on a thread pool sized to the batch, each bounded by its own
timeout. The first accepted guess sets a shared event: guesses that have
not been sent yet return without a request, queued ones are cancelled,
and no later batch is started.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from dataclasses import dataclass
from typing import Optional

from . import api
from .config import log
from .constants import NUMBER_ATTEMPT_TIMEOUT_MS, NUMBER_BATCH_SIZE
from .models import OutcomeKind

CODE_SPACE = 10000
# Slack on top of the per-guess timeout before a batch stops waiting.
_BATCH_GRACE_SEC = 1.0


@dataclass
class SearchState:
    rollcall_id: str
    in_progress: bool = True
    found_code: Optional[str] = None
    auth_detail: Optional[str] = None


@dataclass
class SearchResult:
    rollcall_id: str
    found_code: Optional[str]
    attempts: int
    batches: int
    aborted: bool = False

    @property
    def success(self) -> bool:
        return self.found_code is not None


class NumberCodeSearcher:
    """Brute-forces number rollcalls; at most one search per rollcall id."""

    def __init__(self, client, logger, on_auth_expired=None,
                 batch_size=NUMBER_BATCH_SIZE, attempt_timeout_ms=NUMBER_ATTEMPT_TIMEOUT_MS,
                 cancel_event=None, answer=api.answer_number):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._client = client
        self._logger = logger
        self._on_auth_expired = on_auth_expired
        self._batch_size = batch_size
        self._timeout = attempt_timeout_ms / 1000.0
        self._cancel = cancel_event or threading.Event()
        self._answer = answer
        self._lock = threading.Lock()
        self._states = {}

    def in_progress(self, rollcall_id) -> bool:
        with self._lock:
            return str(rollcall_id) in self._states

    def search(self, rollcall_id) -> Optional[SearchResult]:
        """Run a full search. Returns None if one is already running for this id."""
        rid = str(rollcall_id)
        with self._lock:
            if rid in self._states:
                log.info("Number rollcall #%s is already being searched", rid)
                return None
            state = SearchState(rid)
            self._states[rid] = state
        try:
            return self._run(state)
        finally:
            with self._lock:
                state.in_progress = False
                self._states.pop(rid, None)

    # ── Internals ─────────────────────────────────────────────

    def _run(self, state):
        rid = state.rollcall_id
        found = threading.Event()
        abort = threading.Event()
        counter = {"attempts": 0}
        batches = 0

        def try_code(code):
            if found.is_set() or abort.is_set() or self._cancel.is_set():
                return None
            outcome = self._answer(self._client, rid, code, self._timeout)
            with self._lock:
                counter["attempts"] += 1
                if outcome.kind is OutcomeKind.OK and state.found_code is None:
                    state.found_code = code
                elif outcome.kind is OutcomeKind.AUTH_EXPIRED and state.auth_detail is None:
                    state.auth_detail = outcome.detail or "auth expired"
            if outcome.kind is OutcomeKind.OK:
                found.set()
            elif outcome.kind is OutcomeKind.AUTH_EXPIRED:
                abort.set()
            return outcome

        pool = ThreadPoolExecutor(max_workers=self._batch_size,
                                  thread_name_prefix=f"number-{rid}")
        try:
            for start in range(0, CODE_SPACE, self._batch_size):
                if found.is_set() or abort.is_set() or self._cancel.is_set():
                    break
                batches += 1
                codes = [f"{n:04d}" for n in range(start, min(start + self._batch_size, CODE_SPACE))]
                futures = [pool.submit(try_code, code) for code in codes]
                self._await_batch(futures, found, abort)
        finally:
            # Stragglers finish on their own; their results are ignored.
            pool.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            found_code = state.found_code
            auth_detail = state.auth_detail
            attempts = counter["attempts"]

        if found_code is not None:
            self._logger.success(f"Number rollcall #{rid} answered: code {found_code}")
            return SearchResult(rid, found_code, attempts, batches)

        if auth_detail is not None:
            self._logger.info(f"Number rollcall #{rid} search aborted, login expired ({auth_detail})")
            if self._on_auth_expired is not None:
                self._on_auth_expired(auth_detail)
            return SearchResult(rid, None, attempts, batches, aborted=True)

        if self._cancel.is_set():
            self._logger.info(f"Number rollcall #{rid} search cancelled after {attempts} guesses")
            return SearchResult(rid, None, attempts, batches, aborted=True)

        self._logger.error(f"Number rollcall #{rid}: no valid code found in {attempts} guesses")
        return SearchResult(rid, None, attempts, batches)

    def _await_batch(self, futures, found, abort):
        """Block until every guess settled, a guess succeeded, or the batch timed out."""
        pending = set(futures)
        deadline = time.monotonic() + self._timeout + _BATCH_GRACE_SEC
        while pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                if not future.cancelled() and future.exception() is not None:
                    log.warning("Unexpected error in code guess: %r", future.exception())
            if found.is_set() or abort.is_set() or self._cancel.is_set():
                break
        for future in pending:
            future.cancel()
