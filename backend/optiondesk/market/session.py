"""Authenticated broker session: login, token storage and 401 recovery."""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import time
from collections.abc import Callable
from typing import Any

import httpx
import pyotp

from ..errors import (
    AuthenticationError,
    AuthorizationExpiredError,
    BrokerAPIError,
    BrokerDecodeError,
    BrokerNetworkError,
    InvalidTOTPError,
    OptionDeskError,
    ReloginRequiredError,
)
from ..logging_config import mask
from .models import Credential, SessionTokens
from .store import KeyValueStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/rest/auth/angelbroking/user/v1/loginByPassword"
REFRESH_PATH = "/rest/auth/angelbroking/jwt/v1/generateTokens"
LOGOUT_PATH = "/rest/secure/angelbroking/user/v1/logout"

# Error codes the broker uses for an invalid / expired JWT inside a 200 body
AUTH_ERROR_CODES = frozenset({"AG8001", "AG8002"})

TOKENS_KEY = "session_tokens"
RELOGIN_MESSAGE = "Authentication failed. Please login again."

OTP_FORMAT = re.compile(r"^\d{6}$")

_DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "X-UserType": "USER",
    "X-SourceID": "WEB",
}


def create_broker_http_client(base_url: str, timeout: float = 15.0) -> httpx.AsyncClient:
    """AsyncClient preloaded with the headers every broker call carries."""
    return httpx.AsyncClient(base_url=base_url, headers=_DEFAULT_HEADERS, timeout=timeout)


class SessionState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESH_IN_PROGRESS = "refresh_in_progress"


class SessionManager:
    """Owns the single broker session of the process.

    Every authenticated call goes through ``authorized_request``. An
    authorization-expired answer triggers one token refresh followed by one
    retry of the original call. Concurrent callers that hit an expired token
    share the same refresh. ``max_refresh_attempts`` consecutive refreshes
    without a non-authorization outcome in between exhaust the budget; the
    token set is then cleared and ``ReloginRequiredError`` raised.

    Successful login/refresh persist the token set into ``token_store`` so a
    restart within ``token_ttl`` reuses the session.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        client_code: str = "",
        totp_secret: str = "",
        token_store: KeyValueStore | None = None,
        token_ttl: float = 28 * 60 * 60,
        max_refresh_attempts: int = 3,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._client_code = client_code
        self._totp_secret = totp_secret
        self._store = token_store
        self._token_ttl = token_ttl
        self._max_refresh_attempts = max_refresh_attempts
        self._timeout = timeout
        self._clock = clock

        self._tokens: SessionTokens | None = None
        self._expires_at: float | None = None
        self._state = SessionState.UNAUTHENTICATED
        self._refresh_attempts = 0
        self._refresh_lock = asyncio.Lock()

        self._restore()
        logger.debug(
            "SessionManager initialized: api key %s, client %s, tokens %s",
            mask(api_key),
            client_code or "MISSING",
            "RESTORED" if self._tokens else "MISSING",
        )

    # --- Public API ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return self._tokens is not None

    @property
    def refresh_attempts(self) -> int:
        return self._refresh_attempts

    async def login(self, credential: Credential) -> SessionTokens:
        """Log in with password + one-time code.

        A supplied code must be exactly six digits and is rejected before any
        network call otherwise. Without one, a code is derived from the
        configured TOTP secret.
        """
        otp = self._one_time_code(credential.totp)
        logger.info("Logging in client %s", credential.client_id)
        body = {
            "clientcode": credential.client_id,
            "password": credential.password,
            "totp": otp,
        }
        response = await self._send("POST", LOGIN_PATH, body, None, "login")
        try:
            data = self._decode(response, "login")
        except BrokerAPIError as e:
            logger.error("Login rejected: %s", e.message)
            raise AuthenticationError(f"Login failed: {e.message}") from e
        tokens = SessionTokens.from_payload(data, "login")
        self._client_code = credential.client_id
        self._refresh_attempts = 0
        self._install(tokens)
        logger.info("Login successful for client %s", credential.client_id)
        return tokens

    async def ensure_valid(self) -> SessionTokens:
        """Current token set; refreshes it once the local session lifetime has elapsed."""
        if self._state is SessionState.REFRESH_IN_PROGRESS:
            async with self._refresh_lock:
                pass
        tokens = self._tokens
        if tokens is None:
            raise ReloginRequiredError("Not logged in. Please login first.")
        if self._expires_at is not None and self._clock() >= self._expires_at:
            logger.info("Session lifetime elapsed, refreshing tokens")
            tokens = await self._refresh(tokens)
        return tokens

    async def authorized_request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        what: str = "request",
    ) -> Any:
        """Signed broker call. Returns the ``data`` member of the response body."""
        tokens = await self.ensure_valid()
        try:
            response = await self._send(method, path, payload, tokens, what)
            if self._is_auth_expired(response):
                tokens = await self._recover(tokens, what)
                response = await self._send(method, path, payload, tokens, what)
                if self._is_auth_expired(response):
                    raise AuthorizationExpiredError(what, "still unauthorized after token refresh")
        except BrokerNetworkError:
            self._refresh_attempts = 0
            raise
        self._refresh_attempts = 0
        return self._decode(response, what)

    async def logout(self) -> None:
        tokens = self._tokens
        if tokens is None:
            self._invalidate()
            return
        try:
            response = await self._send(
                "POST", LOGOUT_PATH, {"clientcode": self._client_code}, tokens, "logout"
            )
            self._decode(response, "logout")
            logger.info("Logout successful")
        finally:
            self._invalidate()

    # --- Token lifecycle ---

    def _restore(self) -> None:
        if self._store is None:
            return
        saved = self._store.get(TOKENS_KEY)
        if not isinstance(saved, dict):
            return
        if self._client_code and saved.get("clientCode") not in ("", None, self._client_code):
            logger.info("Persisted session belongs to another client, ignoring it")
            return
        try:
            tokens = SessionTokens.from_payload(saved.get("tokens"), "persisted tokens")
        except BrokerDecodeError as e:
            logger.warning("Discarding unreadable persisted session: %s", e)
            self._store.delete(TOKENS_KEY)
            return
        self._tokens = tokens
        self._expires_at = saved.get("expiresAt")
        self._client_code = saved.get("clientCode") or self._client_code
        self._state = SessionState.AUTHENTICATED
        logger.info("Restored persisted session for client %s", self._client_code or "?")

    def _install(self, tokens: SessionTokens) -> None:
        self._tokens = tokens
        self._expires_at = self._clock() + self._token_ttl
        self._state = SessionState.AUTHENTICATED
        if self._store is not None:
            self._store.set(
                TOKENS_KEY,
                {
                    "tokens": tokens.to_dict(),
                    "clientCode": self._client_code,
                    "expiresAt": self._expires_at,
                },
                ttl=self._token_ttl,
            )

    def _invalidate(self) -> None:
        self._tokens = None
        self._expires_at = None
        self._state = SessionState.UNAUTHENTICATED
        self._refresh_attempts = 0
        if self._store is not None:
            self._store.delete(TOKENS_KEY)

    async def _recover(self, stale: SessionTokens, what: str) -> SessionTokens:
        if self._tokens is not stale or self._refresh_lock.locked():
            # Joining a refresh another caller started; it doesn't count again
            return await self._refresh(stale)
        if self._refresh_attempts >= self._max_refresh_attempts:
            logger.error(
                "%s: token refresh budget exhausted (%d attempts)", what, self._refresh_attempts
            )
            self._invalidate()
            raise ReloginRequiredError(RELOGIN_MESSAGE)
        self._refresh_attempts += 1
        logger.warning(
            "%s: token expired, refreshing (attempt %d/%d)",
            what,
            self._refresh_attempts,
            self._max_refresh_attempts,
        )
        return await self._refresh(stale)

    async def _refresh(self, stale: SessionTokens) -> SessionTokens:
        async with self._refresh_lock:
            current = self._tokens
            if current is None:
                raise ReloginRequiredError(RELOGIN_MESSAGE)
            if current is not stale:
                # Someone else refreshed while we waited for the lock
                return current

            self._state = SessionState.REFRESH_IN_PROGRESS
            try:
                response = await self._send(
                    "POST", REFRESH_PATH, {"refreshToken": stale.refresh_token}, stale, "token refresh"
                )
                data = self._decode(response, "token refresh")
                tokens = SessionTokens.from_payload(data, "token refresh")
            except OptionDeskError as e:
                logger.error("Token refresh failed: %s", e)
                self._invalidate()
                raise ReloginRequiredError(RELOGIN_MESSAGE) from e
            finally:
                if self._state is SessionState.REFRESH_IN_PROGRESS:
                    self._state = SessionState.AUTHENTICATED

            self._install(tokens)
            logger.info("Tokens refreshed")
            return tokens

    # --- HTTP plumbing ---

    def _one_time_code(self, supplied: str | None) -> str:
        code = (supplied or "").strip()
        if code:
            if not OTP_FORMAT.match(code):
                raise InvalidTOTPError("Invalid TOTP format. Please provide a 6-digit code.")
            return code
        if not self._totp_secret:
            raise AuthenticationError("No one-time code supplied and TOTP_SECRET is not configured.")
        try:
            code = pyotp.TOTP(self._totp_secret).now()
        except ValueError as e:  # binascii.Error on a malformed base32 secret
            raise AuthenticationError("TOTP_SECRET is not a valid base32 secret.") from e
        logger.info("Generated one-time code from TOTP secret")
        return code

    def _headers(self, tokens: SessionTokens | None) -> dict[str, str]:
        headers = {
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00-00-00-00-00-00",
            "X-PrivateKey": self._api_key,
        }
        if tokens is not None:
            headers["Authorization"] = f"Bearer {tokens.jwt_token}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        tokens: SessionTokens | None,
        what: str,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method, path, json=payload, headers=self._headers(tokens), timeout=self._timeout
            )
        except httpx.TimeoutException as e:
            raise BrokerNetworkError(what, f"timed out after {self._timeout:g}s") from e
        except httpx.HTTPError as e:
            raise BrokerNetworkError(what, str(e) or type(e).__name__) from e

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @classmethod
    def _is_auth_expired(cls, response: httpx.Response) -> bool:
        if response.status_code == 401:
            return True
        body = cls._body(response)
        return (
            isinstance(body, dict)
            and body.get("status") is False
            and body.get("errorcode") in AUTH_ERROR_CODES
        )

    @classmethod
    def _decode(cls, response: httpx.Response, what: str) -> Any:
        body = cls._body(response)
        if not isinstance(body, dict):
            if response.is_error:
                raise BrokerAPIError(
                    what, f"HTTP {response.status_code}", status_code=response.status_code
                )
            raise BrokerDecodeError(what, "response body is not a JSON object")
        if response.is_error or body.get("status") is not True:
            message = body.get("message") or f"HTTP {response.status_code}"
            raise BrokerAPIError(
                what,
                str(message),
                error_code=body.get("errorcode") or None,
                status_code=response.status_code,
            )
        return body.get("data")
