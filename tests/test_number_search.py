from __future__ import annotations

import threading

import pytest

from autosign_core.models import Outcome, OutcomeKind
from autosign_core.number_search import CODE_SPACE, NumberCodeSearcher

from conftest import wait_for

OK = Outcome(OutcomeKind.OK, body={})
WRONG = Outcome(OutcomeKind.REJECTED, body={"error_code": "wrong_number_code"})
EXPIRED = Outcome(OutcomeKind.AUTH_EXPIRED, detail="status=401", status_code=401)


class Answerer:
    """Records every guess; `decide(code)` returns the Outcome for it."""

    def __init__(self, decide):
        self._decide = decide
        self._lock = threading.Lock()
        self.codes = []

    def __call__(self, client, rid, code, timeout):
        with self._lock:
            self.codes.append(code)
        return self._decide(code)


def _searcher(logger, answer, **kwargs):
    kwargs.setdefault("batch_size", 100)
    kwargs.setdefault("attempt_timeout_ms", 2000)
    return NumberCodeSearcher(object(), logger, answer=answer, **kwargs)


def test_finds_code_and_stops_early(logger):
    answer = Answerer(lambda code: OK if code == "0427" else WRONG)
    result = _searcher(logger, answer).search("9")

    assert result.success
    assert result.found_code == "0427"
    assert result.batches == 5
    # Nothing past the batch containing the answer is ever tried
    assert all(int(code) < 500 for code in answer.codes)
    assert len(logger.messages("success")) == 1
    assert "0427" in logger.messages("success")[0]


def test_exhausted_code_space_is_an_error(logger):
    answer = Answerer(lambda code: WRONG)
    result = _searcher(logger, answer, batch_size=500).search("9")

    assert not result.success and not result.aborted
    assert result.attempts == CODE_SPACE
    assert sorted(answer.codes) == [f"{n:04d}" for n in range(CODE_SPACE)]
    assert len(logger.messages("error")) == 1


def test_concurrent_search_for_same_rollcall_is_refused(logger):
    release = threading.Event()

    def decide(code):
        release.wait(5)
        return OK if code == "0000" else WRONG

    searcher = _searcher(logger, Answerer(decide), batch_size=10)
    results = []
    worker = threading.Thread(target=lambda: results.append(searcher.search("9")))
    worker.start()
    try:
        assert wait_for(lambda: searcher.in_progress("9"))
        assert searcher.search("9") is None
    finally:
        release.set()
        worker.join(5)

    assert results[0].found_code == "0000"
    assert not searcher.in_progress("9")


def test_auth_expiry_aborts_search(logger):
    reasons = []
    answer = Answerer(lambda code: EXPIRED)
    result = _searcher(logger, answer, on_auth_expired=reasons.append).search("9")

    assert result.aborted and not result.success
    assert result.batches == 1
    assert len(answer.codes) <= 100
    assert reasons == ["status=401"]
    assert logger.messages("error") == []


def test_cancel_event_stops_search(logger):
    cancel = threading.Event()

    def decide(code):
        if code == "0150":
            cancel.set()
        return WRONG

    answer = Answerer(decide)
    result = _searcher(logger, answer, cancel_event=cancel).search("9")

    assert result.aborted
    assert result.batches == 2
    assert len(answer.codes) <= 200
    assert logger.messages("error") == []


def test_transport_errors_do_not_stop_search(logger):
    def decide(code):
        if code == "0003":
            return OK
        return Outcome(OutcomeKind.TRANSPORT_ERROR, detail="timeout")

    result = _searcher(logger, Answerer(decide), batch_size=4).search("9")
    assert result.found_code == "0003"


def test_batch_size_must_be_positive(logger):
    with pytest.raises(ValueError):
        _searcher(logger, Answerer(lambda code: WRONG), batch_size=0)
