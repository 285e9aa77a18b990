"""
HTTP sessions for the course service, with retry/pooling, and the
authenticated clients for both account modes.

Redirects are never followed: a 3xx towards the identity provider is how
the service reports an expired login, so callers must be able to see it.
"""

import os
import importlib
import threading

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import log, ConfigurationInvalid
from .constants import (
    API_TIMEOUT_SEC, AUTH_MODE_PASSWORD, AUTH_MODE_SESSION_TOKEN,
    DEFAULT_USER_AGENT, LOGIN_REDIRECT_MARKERS, NUMBER_BATCH_SIZE,
)

# Only the idempotent rollcall listing is retried; answers are never replayed.
_retry_strategy = Retry(
    total=2,
    backoff_factor=1,                           # Wait 1s, 2s between retries
    status_forcelist=[502, 503, 504],
    allowed_methods=["HEAD", "GET"],
    redirect=0,
    raise_on_redirect=False,
)


class LoginFailed(RuntimeError):
    """Raised by a login hook when the identity provider rejects the credentials."""


def _get_ca_bundle():
    """Env override first, certifi otherwise."""
    env_ca = os.environ.get("REQUESTS_CA_BUNDLE") or os.environ.get("SSL_CERT_FILE")
    if env_ca and os.path.isfile(env_ca):
        return env_ca
    return certifi.where()


def create_session(pool_maxsize=NUMBER_BATCH_SIZE, headers=None):
    """
    New requests.Session with connection pooling, retry, and SSL.
    The pool is sized for a full number-search batch so guesses don't queue
    behind each other on the connection pool.
    """
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=1,
        pool_maxsize=pool_maxsize,
        max_retries=_retry_strategy,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = _get_ca_bundle()
    session.headers["User-Agent"] = DEFAULT_USER_AGENT
    if headers:
        session.headers.update(headers)
    return session


def reset_session(session, pool_maxsize=NUMBER_BATCH_SIZE, headers=None):
    """Close and recreate the HTTP session (drops cookies and stale connections)."""
    try:
        session.close()
    except Exception as e:
        log.debug("Ignoring error while closing session: %s", e)
    return create_session(pool_maxsize=pool_maxsize, headers=headers)


# ─── Response classification ─────────────────────────────────────

def is_login_redirect(location):
    location = location or ""
    return any(marker in location for marker in LOGIN_REDIRECT_MARKERS)


def classify_auth_expired(status_code, location=None):
    """True when a response means the login is gone: 401/403, or a 3xx to the login page."""
    if status_code in (401, 403):
        return True
    if 300 <= status_code < 400 and is_login_redirect(location):
        return True
    return False


# ─── Clients ─────────────────────────────────────────────────────

class CourseClient:
    """Base client: owns one pooled session against the course server."""

    auth_mode = None

    def __init__(self, server_url, pool_maxsize=NUMBER_BATCH_SIZE):
        self.server_url = server_url.rstrip("/")
        self._pool_maxsize = pool_maxsize
        self._lock = threading.Lock()
        self.session = create_session(pool_maxsize, self._session_headers())

    def _session_headers(self):
        return None

    def _ready_session(self):
        return self.session

    @property
    def can_recover(self):
        return False

    def url(self, path):
        return f"{self.server_url}{path}"

    def request(self, method, path, **kwargs):
        """Issue an authenticated request. Raises requests.RequestException / LoginFailed."""
        kwargs.setdefault("timeout", API_TIMEOUT_SEC)
        kwargs["allow_redirects"] = False
        session = self._ready_session()
        return session.request(method, self.url(path), **kwargs)

    def reset(self):
        """Discard the authenticated state. Returns True if a fresh login is possible."""
        return False

    def close(self):
        try:
            self.session.close()
        except Exception as e:
            log.debug("Ignoring error while closing session: %s", e)


class SessionTokenClient(CourseClient):
    """
    Replays a session cookie obtained out of band. Once the server rejects
    it there is nothing to rebuild from; the operator must re-authorize.
    """

    auth_mode = AUTH_MODE_SESSION_TOKEN

    def __init__(self, server_url, session_token, **kwargs):
        if not session_token:
            raise ConfigurationInvalid("session_token mode needs a session token")
        self._token = session_token
        super().__init__(server_url, **kwargs)

    def _session_headers(self):
        return {"Cookie": self._token}


class PasswordClient(CourseClient):
    """
    Logs in with username/password through an injected login hook,
    lazily on the first request after construction or reset().

    The hook is ``login(session, server_url, username, password)``; it must
    leave the session authenticated or raise LoginFailed.
    """

    auth_mode = AUTH_MODE_PASSWORD

    def __init__(self, server_url, username, password, login, **kwargs):
        if not username or not password:
            raise ConfigurationInvalid("password mode needs username and password")
        if login is None:
            raise ConfigurationInvalid("password mode needs a login hook")
        self._username = username
        self._password = password
        self._login = login
        self._logged_in = False
        super().__init__(server_url, **kwargs)

    @property
    def can_recover(self):
        return True

    def _ready_session(self):
        with self._lock:
            if not self._logged_in:
                log.info("Logging in as %s", self._username)
                self._login(self.session, self.server_url, self._username, self._password)
                self._logged_in = True
            return self.session

    def reset(self):
        with self._lock:
            self.session = reset_session(self.session, self._pool_maxsize)
            self._logged_in = False
        return True


def resolve_login_hook(target):
    """'package.module:function' → callable."""
    if not target:
        return None
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationInvalid(f"loginHook must look like 'module:function', got {target!r}")
    try:
        hook = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationInvalid(f"loginHook {target!r} cannot be loaded: {e}") from e
    if not callable(hook):
        raise ConfigurationInvalid(f"loginHook {target!r} is not callable")
    return hook


def build_client(account, login=None, pool_maxsize=NUMBER_BATCH_SIZE):
    """Client for an AccountConfig. Raises ConfigurationInvalid on missing credentials."""
    if account.auth_mode == AUTH_MODE_SESSION_TOKEN:
        return SessionTokenClient(account.server_url, account.session_token,
                                  pool_maxsize=pool_maxsize)
    if account.auth_mode == AUTH_MODE_PASSWORD:
        login = login or resolve_login_hook(account.login_hook)
        return PasswordClient(account.server_url, account.username, account.password,
                              login, pool_maxsize=pool_maxsize)
    raise ConfigurationInvalid(f"unknown auth mode {account.auth_mode!r}")
