"""
Per-account logger sink and chat-bot notifiers.

AccountLogger is the only human-facing channel the engine has:
info stays in the local log; success / warn / error / event are also
pushed to the account's notifier.
"""

import base64
import hashlib
import hmac
import logging
import time
import urllib.parse

import requests

from .config import log, SUCCESS, EVENT


def mask_username(username):
    if not username or len(username) <= 6:
        return username
    return f"{username[:4]}****{username[-2:]}"


class AccountLogger:
    """Five-severity sink bound to one account."""

    def __init__(self, account_id, username=None, notify=None):
        self.account_id = account_id
        self.label = mask_username(username) or account_id
        self._log = log.getChild(str(account_id))
        self._notify = notify

    def _emit(self, level, message, notify):
        self._log.log(level, "[%s] %s", self.label, message)
        if notify and self._notify is not None:
            try:
                self._notify(f"[{self.label}] {message}")
            except Exception as e:
                self._log.error("Notification failed: %s", e)

    def info(self, message):
        self._emit(logging.INFO, message, notify=False)

    def success(self, message):
        self._emit(SUCCESS, message, notify=True)

    def warn(self, message):
        self._emit(logging.WARNING, message, notify=True)

    def error(self, message):
        self._emit(logging.ERROR, message, notify=True)

    def event(self, message):
        self._emit(EVENT, message, notify=True)


# ─── DingTalk ────────────────────────────────────────────────────

def _signed_url(webhook, secret):
    timestamp = str(int(time.time() * 1000))
    string_to_sign = f"{timestamp}\n{secret}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), string_to_sign, hashlib.sha256).digest()
    sign = urllib.parse.quote_plus(base64.b64encode(digest))
    sep = "&" if "?" in webhook else "?"
    return f"{webhook}{sep}timestamp={timestamp}&sign={sign}"


def dingtalk_notifier(webhook, secret=None, session=None, timeout=10):
    """Callable that posts a text message to a DingTalk robot. None if no webhook."""
    if not webhook:
        return None
    http = session or requests

    def send(message):
        if not message:
            return
        url = _signed_url(webhook, secret) if secret else webhook
        body = {"msgtype": "text", "text": {"content": message}}
        try:
            resp = http.post(url, json=body, timeout=timeout)
            if resp.status_code != 200:
                log.warning("DingTalk push failed: HTTP %d", resp.status_code)
                return
            data = resp.json()
            if data.get("errcode"):
                log.warning("DingTalk push rejected: %s", data.get("errmsg"))
        except (requests.RequestException, ValueError) as e:
            log.warning("DingTalk push error: %s", e)

    return send


def fan_out(*notifiers):
    """Combine notifiers; one failing target doesn't stop the others."""
    targets = [n for n in notifiers if n is not None]
    if not targets:
        return None

    def send(message):
        for target in targets:
            try:
                target(message)
            except Exception as e:
                log.error("Notifier %r failed: %s", target, e)

    return send
