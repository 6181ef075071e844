"""Authentication session management for the remote catalog.

Two strategies exist: token (username/password login yielding an access
and a refresh token) and static key (a pre-issued API key). The manager
owns the token session and serializes every mutation of it, so one client
can be shared by concurrent reconciliation passes.

Session states:
    Unauthenticated -> TokenActive -> TokenActive + anti-forgery bound

Mutating requests need the anti-forgery token and its session cookie. They
are fetched once per access token and cached until a refresh replaces it.
"""

import threading
from dataclasses import dataclass, field, replace
from enum import Enum

import httpx
import structlog

from . import metrics
from .config import AuthStrategy, Settings
from .errors import AuthenticationError

logger = structlog.get_logger(__name__)

LOGIN_PATH = "/api/v1/security/login"
REFRESH_PATH = "/api/v1/security/refresh"
CSRF_PATH = "/api/v1/security/csrf_token/"

JSON_HEADERS = {"Content-Type": "application/json"}


class AuthMode(str, Enum):
    """How a request was authenticated."""

    NONE = "none"
    TOKEN = "token"
    STATIC_KEY = "static_key"


@dataclass
class AuthSession:
    """Token session state. Lives for the process, never persisted."""

    access_token: str | None = None
    refresh_token: str | None = None
    anti_forgery_token: str | None = None
    session_cookie: str | None = None

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)

    @property
    def anti_forgery_bound(self) -> bool:
        return bool(self.anti_forgery_token and self.session_cookie)

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.clear_anti_forgery()

    def clear_anti_forgery(self) -> None:
        self.anti_forgery_token = None
        self.session_cookie = None


@dataclass
class AuthHeaders:
    """Headers for one request and the strategy that produced them."""

    headers: dict[str, str] = field(default_factory=dict)
    mode: AuthMode = AuthMode.NONE


class AuthSessionManager:
    """
    Builds request headers according to the configured strategy order.

    A strategy that cannot be built (missing credentials, failed login or
    anti-forgery exchange) is skipped in favour of the next one. When no
    strategy applies, requests go out unauthenticated.
    """

    def __init__(self, settings: Settings, http: httpx.Client):
        self.settings = settings
        self.http = http
        self._session = AuthSession()
        self._lock = threading.RLock()

    @property
    def token_configured(self) -> bool:
        return bool(self.settings.username and self.settings.password)

    @property
    def key_configured(self) -> bool:
        return bool(self.settings.api_key and self.settings.api_key.strip())

    @property
    def session(self) -> AuthSession:
        """Copy of the current session state."""
        with self._lock:
            return replace(self._session)

    def reset(self) -> None:
        with self._lock:
            self._session.clear()

    def headers_for(self, method: str) -> AuthHeaders:
        """Resolve headers for a request, trying strategies in configured order."""
        if not self.settings.auth_enabled:
            return AuthHeaders(dict(JSON_HEADERS), AuthMode.NONE)

        if self.settings.auth_strategy == AuthStrategy.KEY_FIRST:
            strategies = (self.key_headers, lambda: self.token_headers(method))
        else:
            strategies = (lambda: self.token_headers(method), self.key_headers)

        for strategy in strategies:
            headers = strategy()
            if headers is not None:
                return headers
        return AuthHeaders(dict(JSON_HEADERS), AuthMode.NONE)

    def key_headers(self) -> AuthHeaders | None:
        """Static-key headers, None when no key is configured."""
        if not self.settings.auth_enabled or not self.key_configured:
            return None
        headers = dict(JSON_HEADERS)
        headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return AuthHeaders(headers, AuthMode.STATIC_KEY)

    def token_headers(self, method: str) -> AuthHeaders | None:
        """
        Token headers, logging in first if needed.

        Non-GET requests also carry the anti-forgery token and session
        cookie. Returns None when credentials are missing or any exchange
        with the remote catalog fails.
        """
        if not self.token_configured:
            return None
        with self._lock:
            try:
                access_token = self._ensure_access_token()
                headers = dict(JSON_HEADERS)
                headers["Authorization"] = f"Bearer {access_token}"
                if method.upper() != "GET":
                    self._ensure_anti_forgery(access_token)
                    headers["X-CSRFToken"] = self._session.anti_forgery_token
                    headers["Cookie"] = self._session.session_cookie
                return AuthHeaders(headers, AuthMode.TOKEN)
            except (AuthenticationError, httpx.HTTPError) as e:
                logger.warning("token_auth_unavailable", error=str(e))
                return None

    def refresh(self) -> bool:
        """
        Exchange the refresh token for a new access token.

        Success replaces the access token and drops the anti-forgery
        binding. Failure clears the whole session.
        """
        with self._lock:
            refresh_token = self._session.refresh_token
            if not refresh_token:
                return False
            try:
                response = self.http.post(
                    REFRESH_PATH,
                    headers={**JSON_HEADERS, "Authorization": f"Bearer {refresh_token}"},
                )
            except httpx.HTTPError as e:
                logger.warning("token_refresh_failed", error=str(e))
                metrics.AUTH_EVENTS.labels(event="refresh", status="failure").inc()
                self._session.clear()
                return False

            access_token = _read_field(response, "access_token") if response.status_code < 400 else None
            if not access_token:
                logger.warning("token_refresh_failed", status_code=response.status_code)
                metrics.AUTH_EVENTS.labels(event="refresh", status="failure").inc()
                self._session.clear()
                return False

            self._session.access_token = access_token
            self._session.clear_anti_forgery()
            metrics.AUTH_EVENTS.labels(event="refresh", status="success").inc()
            logger.info("token_refreshed")
            return True

    def _ensure_access_token(self) -> str:
        if not self._session.access_token:
            self._login()
        return self._session.access_token

    def _login(self) -> None:
        payload = {
            "username": self.settings.username,
            "password": self.settings.password,
            "provider": self.settings.provider or "db",
            "refresh": True,
        }
        try:
            response = self.http.post(LOGIN_PATH, json=payload, headers=JSON_HEADERS)
        except httpx.HTTPError:
            self._session.clear()
            metrics.AUTH_EVENTS.labels(event="login", status="failure").inc()
            raise

        access_token = refresh_token = None
        if response.status_code < 400:
            access_token = _read_field(response, "access_token")
            refresh_token = _read_field(response, "refresh_token")
        if not access_token or not refresh_token:
            self._session.clear()
            metrics.AUTH_EVENTS.labels(event="login", status="failure").inc()
            raise AuthenticationError(f"Login failed with status {response.status_code}")

        self._session.access_token = access_token
        self._session.refresh_token = refresh_token
        self._session.clear_anti_forgery()
        metrics.AUTH_EVENTS.labels(event="login", status="success").inc()
        logger.info("token_login_succeeded", username=self.settings.username)

    def _ensure_anti_forgery(self, access_token: str) -> None:
        if self._session.anti_forgery_bound:
            return
        response = self.http.get(
            CSRF_PATH,
            headers={**JSON_HEADERS, "Authorization": f"Bearer {access_token}"},
        )
        token = _read_field(response, "result") if response.status_code < 400 else None
        cookie = extract_session_cookie(response)
        if not token or not cookie:
            metrics.AUTH_EVENTS.labels(event="csrf", status="failure").inc()
            raise AuthenticationError("Anti-forgery token or session cookie missing")
        self._session.anti_forgery_token = token
        self._session.session_cookie = cookie
        metrics.AUTH_EVENTS.labels(event="csrf", status="success").inc()
        logger.debug("anti_forgery_token_bound")


def extract_session_cookie(response: httpx.Response) -> str | None:
    """Join the name=value parts of every Set-Cookie header."""
    cookies = []
    for set_cookie in response.headers.get_list("set-cookie"):
        value = set_cookie.split(";", 1)[0].strip()
        if value:
            cookies.append(value)
    return "; ".join(cookies) if cookies else None


def _read_field(response: httpx.Response, key: str) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get(key) is None:
        return None
    return str(data[key])
