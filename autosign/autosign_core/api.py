"""
Course server API calls — rollcall listing, radar answer, number answer.

Every call returns an Outcome instead of raising: transport errors and
auth failures are classified here, at the lowest layer, so the engine and
the solvers only ever branch on Outcome.kind.
"""

import uuid

import requests

from .config import log
from .constants import (
    ACCEPTED_STATUS, API_TIMEOUT_SEC, NUMBER_ANSWER_PATH,
    RADAR_ANSWER_PATH, ROLLCALLS_PATH,
)
from .http_client import LoginFailed, classify_auth_expired
from .models import Outcome, OutcomeKind


def _send(client, method, path, **kwargs):
    """Run one request. Returns (response, None) or (None, failure Outcome)."""
    try:
        resp = client.request(method, path, **kwargs)
    except LoginFailed as e:
        return None, Outcome(OutcomeKind.AUTH_EXPIRED, detail=f"login rejected: {e}")
    except requests.RequestException as e:
        return None, Outcome(OutcomeKind.TRANSPORT_ERROR, detail=str(e))

    if classify_auth_expired(resp.status_code, resp.headers.get("Location")):
        location = resp.headers.get("Location") or ""
        detail = f"status={resp.status_code}"
        if location:
            detail += f" location={location[:100]}"
        return None, Outcome(OutcomeKind.AUTH_EXPIRED, detail=detail, status_code=resp.status_code)
    return resp, None


def _json_body(resp):
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ─── Rollcall listing ────────────────────────────────────────────

def list_rollcalls(client):
    """GET the open rollcalls. OK carries the raw text; parsing is the caller's job."""
    resp, failure = _send(client, "GET", ROLLCALLS_PATH, timeout=API_TIMEOUT_SEC)
    if failure:
        return failure
    if resp.status_code != 200:
        return Outcome(OutcomeKind.TRANSPORT_ERROR, body=resp.text[:200],
                       detail=f"HTTP {resp.status_code}", status_code=resp.status_code)
    return Outcome(OutcomeKind.OK, body=resp.text, status_code=resp.status_code)


# ─── Answers ─────────────────────────────────────────────────────

def answer_radar(client, rollcall_id, longitude, latitude):
    """PUT a location answer. OK iff the server says on_call_fine."""
    payload = {
        "deviceId": str(uuid.uuid4()),
        "latitude": latitude,
        "longitude": longitude,
        "speed": None,
        "accuracy": 68,
        "altitude": None,
        "altitudeAccuracy": None,
        "heading": None,
    }
    path = RADAR_ANSWER_PATH.format(rollcall_id=rollcall_id)
    resp, failure = _send(client, "PUT", path, json=payload, timeout=API_TIMEOUT_SEC)
    if failure:
        return failure

    body = _json_body(resp)
    if not body:
        log.debug("Radar answer for #%s returned no JSON (HTTP %d)", rollcall_id, resp.status_code)
    kind = OutcomeKind.OK if body.get("status_name") == ACCEPTED_STATUS else OutcomeKind.REJECTED
    return Outcome(kind, body=body, status_code=resp.status_code)


def answer_number(client, rollcall_id, code, timeout):
    """PUT one 4-digit guess. OK iff HTTP 200 and no 'wrong' error_code."""
    payload = {"deviceId": str(uuid.uuid4()), "numberCode": code}
    path = NUMBER_ANSWER_PATH.format(rollcall_id=rollcall_id)
    resp, failure = _send(client, "PUT", path, json=payload, timeout=timeout)
    if failure:
        return failure

    body = _json_body(resp)
    error_code = str(body.get("error_code") or "")
    if resp.status_code != 200 or "wrong" in error_code:
        return Outcome(OutcomeKind.REJECTED, body=body, status_code=resp.status_code)
    return Outcome(OutcomeKind.OK, body=body, status_code=resp.status_code)
