"""Client for the hosted auth provider (GoTrue-compatible REST API).

An :class:`AuthClient` can hold one signed-in session for in-process use;
the ``get_user`` / ``refresh_session`` / ``resolve_session`` methods take the
caller's tokens instead and leave that session alone.

Every public call returns a result object instead of raising: provider
errors are mapped to friendly text through :func:`map_auth_error` and
transport failures become a fixed network-error message.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

log = logging.getLogger(__name__)

AUTH_PATH = "/auth/v1"
DEFAULT_SITE_URL = "http://localhost:3000"
_TIMEOUT = 10.0

NETWORK_ERROR = "Network error. Please check your connection and try again."
UNEXPECTED_ERROR = "An unexpected error occurred"

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"
USER_UPDATED = "USER_UPDATED"
# Only these reach subscribers.
NOTIFIED_EVENTS = frozenset({SIGNED_IN, SIGNED_OUT})


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_CONFIRMED = "email_not_confirmed"
    USER_EXISTS = "user_exists"
    WEAK_PASSWORD = "weak_password"
    SIGNUP_DISABLED = "signup_disabled"
    RATE_LIMITED = "rate_limited"
    INVALID_EMAIL = "invalid_email"
    NETWORK = "network"
    UNKNOWN = "unknown"


# provider message -> (kind, text shown to the user)
AUTH_ERROR_MESSAGES: dict[str, tuple[AuthErrorKind, str]] = {
    "Invalid login credentials": (
        AuthErrorKind.INVALID_CREDENTIALS, "Invalid email or password. Please try again."),
    "Email not confirmed": (
        AuthErrorKind.EMAIL_NOT_CONFIRMED, "Please check your email and click the confirmation link."),
    "User already registered": (
        AuthErrorKind.USER_EXISTS, "An account with this email already exists."),
    "Password should be at least 6 characters": (
        AuthErrorKind.WEAK_PASSWORD, "Password must be at least 6 characters long."),
    "Signup is disabled": (
        AuthErrorKind.SIGNUP_DISABLED, "Account creation is currently disabled."),
    "Email rate limit exceeded": (
        AuthErrorKind.RATE_LIMITED, "Too many requests. Please try again later."),
    "Invalid email": (
        AuthErrorKind.INVALID_EMAIL, "Please enter a valid email address."),
}


@dataclass
class AuthError:
    message: str
    kind: AuthErrorKind = AuthErrorKind.UNKNOWN
    code: str | None = None
    details: str | None = None


def map_auth_error(message: str | None, code: str | None = None, details: str | None = None) -> AuthError:
    """Translate a provider error message; unknown text passes through unchanged."""
    if message in AUTH_ERROR_MESSAGES:
        kind, text = AUTH_ERROR_MESSAGES[message]
        return AuthError(message=text, kind=kind, code=code, details=details)
    return AuthError(message=message or UNEXPECTED_ERROR, code=code, details=details)


def _network_error() -> AuthError:
    return AuthError(message=NETWORK_ERROR, kind=AuthErrorKind.NETWORK)


class AuthAPIError(Exception):
    """Non-2xx answer from the auth API."""
    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def to_auth_error(self) -> AuthError:
        return map_auth_error(self.message, self.code)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: str
    email: str | None
    created_at: str | None = None
    updated_at: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False
    phone: str | None = None
    company: str | None = None
    role: str = "dev"


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    expires_at: float | None
    token_type: str
    user: User | None


@dataclass
class AuthResponse:
    success: bool
    data: dict[str, Any] | None = None
    error: AuthError | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PasswordResetResponse:
    success: bool
    message: str
    error: AuthError | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def parse_user(raw: dict[str, Any]) -> User:
    meta = raw.get("user_metadata") or {}
    return User(
        id=raw["id"],
        email=raw.get("email"),
        created_at=raw.get("created_at"),
        updated_at=raw.get("updated_at"),
        name=meta.get("name") or meta.get("full_name"),
        avatar_url=meta.get("avatar_url"),
        email_verified=raw.get("email_confirmed_at") is not None,
        phone=raw.get("phone") or None,
        company=meta.get("company"),
        role=meta.get("role") or "dev",
    )


def parse_session(raw: dict[str, Any], now: float) -> AuthSession:
    expires_in = raw.get("expires_in")
    expires_at = raw.get("expires_at")
    if expires_at is None and expires_in is not None:
        expires_at = now + float(expires_in)
    user = raw.get("user")
    return AuthSession(
        access_token=raw["access_token"],
        refresh_token=raw.get("refresh_token"),
        expires_in=expires_in,
        expires_at=expires_at,
        token_type=raw.get("token_type") or "bearer",
        user=parse_user(user) if user else None,
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

AuthCallback = Callable[[str, "AuthSession | None"], None]


@dataclass
class Subscription:
    callback: AuthCallback
    _client: "AuthClient" = field(repr=False)
    active: bool = True

    def cancel(self) -> None:
        if self.active:
            self._client._unsubscribe(self)
            self.active = False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AuthClient:
    def __init__(
        self,
        url: str | None = None,
        anon_key: str | None = None,
        site_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        url = url or os.environ.get("SUPABASE_URL")
        if not url:
            raise ValueError("SUPABASE_URL is not set")
        self.base_url = url.rstrip("/") + AUTH_PATH
        self.anon_key = anon_key or os.environ.get("SUPABASE_ANON_KEY", "")
        self.site_url = (site_url or os.environ.get("AUTOPILOT_SITE_URL", DEFAULT_SITE_URL)).rstrip("/")
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []
        self.session: AuthSession | None = None

    # -- plumbing -----------------------------------------------------------

    async def _request(
        self, method: str, path: str, *, json: dict | None = None,
        params: dict | None = None, token: str | None = None,
    ) -> dict[str, Any]:
        headers = {"apikey": self.anon_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=httpx.Timeout(_TIMEOUT),
            headers=headers, transport=self._transport,
        ) as client:
            resp = await client.request(method, path, json=json, params=params)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = (body.get("msg") or body.get("error_description")
                       or body.get("message") or body.get("error") or resp.reason_phrase)
            code = body.get("error_code") or body.get("error")
            raise AuthAPIError(str(message), code=str(code) if code else None, status=resp.status_code)
        if not resp.content:
            return {}
        return resp.json()

    def _emit(self, event: str, session: AuthSession | None) -> None:
        if event not in NOTIFIED_EVENTS:
            return
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            try:
                sub.callback(event, session)
            except Exception as exc:
                log.warning("Auth state subscriber failed on %s: %s", event, exc)

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def _store_session(self, raw: dict[str, Any], event: str) -> AuthSession:
        self.session = parse_session(raw, self._clock())
        self._emit(event, self.session)
        return self.session

    def _clear_session(self) -> None:
        had_session = self.session is not None
        self.session = None
        if had_session:
            self._emit(SIGNED_OUT, None)

    def _session_payload(self, session: AuthSession | None, user: User | None = None) -> dict[str, Any]:
        return {"user": user or (session.user if session else None), "session": session}

    def on_auth_state_change(self, callback: AuthCallback) -> Subscription:
        """Call *callback(event, session)* on sign-in and sign-out until cancelled."""
        sub = Subscription(callback=callback, _client=self)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    # -- sign in / out --------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> AuthResponse:
        try:
            raw = await self._request(
                "POST", "/token", params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
        except AuthAPIError as exc:
            return AuthResponse(success=False, error=exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Sign in failed: %s", exc)
            return AuthResponse(success=False, error=_network_error())

        if not raw.get("access_token") or not raw.get("user"):
            return AuthResponse(success=False, error=AuthError("Authentication failed. Please try again."))
        session = self._store_session(raw, SIGNED_IN)
        return AuthResponse(success=True, data=self._session_payload(session))

    async def sign_up_with_password(
        self, email: str, password: str, confirm_password: str,
        name: str | None = None, company: str | None = None,
    ) -> AuthResponse:
        if password != confirm_password:
            return AuthResponse(success=False, error=AuthError("Passwords do not match."))
        try:
            raw = await self._request("POST", "/signup", json={
                "email": email, "password": password,
                "data": {"name": name, "company": company, "role": "dev"},
            })
        except AuthAPIError as exc:
            return AuthResponse(success=False, error=exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Sign up failed: %s", exc)
            return AuthResponse(success=False, error=_network_error())

        # With email confirmation on, the provider answers with the bare user.
        if raw.get("access_token"):
            session = self._store_session(raw, SIGNED_IN)
            return AuthResponse(success=True, data=self._session_payload(session))
        if raw.get("id"):
            return AuthResponse(success=True, data={"user": parse_user(raw), "session": None})
        return AuthResponse(success=False, error=AuthError("Account creation failed. Please try again."))

    async def sign_out(self, access_token: str | None = None) -> AuthResponse:
        """End a session.

        Without *access_token* this ends the client's own session, which is
        dropped locally even if the provider call fails.  With one, only that
        token is revoked; the local session is cleared only if it holds it.
        """
        if access_token is None:
            session = self.session
            self._clear_session()
            if session is None:
                return AuthResponse(success=True)
            access_token = session.access_token
        elif self.session is not None and self.session.access_token == access_token:
            self._clear_session()
        try:
            await self._request("POST", "/logout", token=access_token)
        except AuthAPIError as exc:
            log.warning("Sign out error: %s", exc)
            return AuthResponse(success=False, error=exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Sign out error: %s", exc)
            return AuthResponse(success=False, error=_network_error())
        return AuthResponse(success=True)

    async def sign_in_with_provider(self, provider: str, redirect_to: str | None = None) -> str:
        """Return the provider's authorize URL; the caller sends the browser there."""
        params = {"provider": provider, "redirect_to": redirect_to or f"{self.site_url}/dashboard"}
        return f"{self.base_url}/authorize?{urlencode(params)}"

    # -- caller-held tokens -----------------------------------------------------
    # These never read or write ``self.session``.

    async def get_user(self, access_token: str) -> User | None:
        """The user behind *access_token*, or None if the token is not accepted."""
        try:
            raw = await self._request("GET", "/user", token=access_token)
        except (AuthAPIError, httpx.HTTPError) as exc:
            log.warning("Get user error: %s", exc)
            return None
        return parse_user(raw) if raw.get("id") else None

    async def refresh_session(self, refresh_token: str) -> AuthSession | None:
        """Exchange *refresh_token* for a fresh session."""
        try:
            raw = await self._request(
                "POST", "/token", params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
        except (AuthAPIError, httpx.HTTPError) as exc:
            log.warning("Refresh session error: %s", exc)
            return None
        return parse_session(raw, self._clock())

    async def resolve_session(self, access_token: str, refresh_token: str | None = None) -> AuthSession | None:
        """Session for the given tokens, refreshed when the access token is no longer accepted."""
        user = await self.get_user(access_token)
        if user is not None:
            return AuthSession(
                access_token=access_token, refresh_token=refresh_token,
                expires_in=None, expires_at=None, token_type="bearer", user=user,
            )
        if not refresh_token:
            return None
        return await self.refresh_session(refresh_token)

    # -- session --------------------------------------------------------------

    async def set_session(
        self, access_token: str, refresh_token: str | None = None, persist: bool = True,
    ) -> AuthResponse:
        """Adopt tokens obtained elsewhere (OAuth redirect, recovery link).

        With ``persist=False`` the tokens are only checked and echoed back.
        """
        try:
            raw_user = await self._request("GET", "/user", token=access_token)
        except AuthAPIError as exc:
            return AuthResponse(success=False, error=exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Set session failed: %s", exc)
            return AuthResponse(success=False, error=_network_error())
        raw = {
            "access_token": access_token, "refresh_token": refresh_token,
            "token_type": "bearer", "user": raw_user,
        }
        session = self._store_session(raw, SIGNED_IN) if persist else parse_session(raw, self._clock())
        return AuthResponse(success=True, data=self._session_payload(session))

    def _expired(self, session: AuthSession) -> bool:
        return session.expires_at is not None and session.expires_at <= self._clock()

    async def get_current_session(self) -> AuthSession | None:
        """This client's session, refreshed first if it has expired.  None when signed out."""
        session = self.session
        if session is None:
            return None
        if not self._expired(session):
            return session
        refreshed = await self.refresh_session(session.refresh_token) if session.refresh_token else None
        if refreshed is None:
            self._clear_session()
            return None
        self.session = refreshed
        self._emit(TOKEN_REFRESHED, refreshed)
        return refreshed

    async def get_current_user(self) -> User | None:
        session = await self.get_current_session()
        if session is None:
            return None
        return await self.get_user(session.access_token)

    # -- password & email -----------------------------------------------------

    async def request_password_reset(self, email: str) -> PasswordResetResponse:
        try:
            await self._request(
                "POST", "/recover", json={"email": email},
                params={"redirect_to": f"{self.site_url}/reset-password"},
            )
        except AuthAPIError as exc:
            return PasswordResetResponse(False, "Failed to send reset email. Please try again.", exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Password reset request failed: %s", exc)
            return PasswordResetResponse(False, NETWORK_ERROR, _network_error())
        return PasswordResetResponse(True, "Password reset email sent. Please check your inbox.")

    async def confirm_password_reset(
        self, password: str, access_token: str | None = None, use_current_session: bool = True,
    ) -> PasswordResetResponse:
        """Set a new password with the recovery token.

        Without a token the client's own session is used, unless
        *use_current_session* is False.
        """
        token = access_token
        if token is None and use_current_session and self.session is not None:
            token = self.session.access_token
        if not token:
            return PasswordResetResponse(
                False, "Failed to reset password. Please try again.", AuthError("Auth session missing!"),
            )
        try:
            raw = await self._request("PUT", "/user", json={"password": password}, token=token)
        except AuthAPIError as exc:
            return PasswordResetResponse(False, "Failed to reset password. Please try again.", exc.to_auth_error())
        except httpx.HTTPError as exc:
            log.warning("Password reset failed: %s", exc)
            return PasswordResetResponse(False, NETWORK_ERROR, _network_error())
        if self.session is not None and self.session.access_token == token and raw.get("id"):
            self.session.user = parse_user(raw)
            self._emit(USER_UPDATED, self.session)
        return PasswordResetResponse(True, "Password has been reset successfully.")

    async def resend_email_verification(self, email: str) -> PasswordResetResponse:
        try:
            await self._request("POST", "/resend", json={"type": "signup", "email": email})
        except AuthAPIError as exc:
            return PasswordResetResponse(
                False, "Failed to resend verification email. Please try again.", exc.to_auth_error(),
            )
        except httpx.HTTPError as exc:
            log.warning("Resend verification failed: %s", exc)
            return PasswordResetResponse(False, NETWORK_ERROR, _network_error())
        return PasswordResetResponse(True, "Verification email sent. Please check your inbox.")

    async def verify_email(self, token: str) -> PasswordResetResponse:
        try:
            raw = await self._request("POST", "/verify", json={"type": "email", "token_hash": token})
        except AuthAPIError as exc:
            return PasswordResetResponse(
                False, "Invalid or expired verification token. Please request a new one.", exc.to_auth_error(),
            )
        except httpx.HTTPError as exc:
            log.warning("Email verification failed: %s", exc)
            return PasswordResetResponse(False, NETWORK_ERROR, _network_error())
        if raw.get("access_token"):
            self._store_session(raw, SIGNED_IN)
        return PasswordResetResponse(True, "Email verified successfully! You can now access your account.")
