from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import datetime
from typing import Any

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vcopilot.auth.store import CredentialStore
from vcopilot.errors import NoSubscriptionError, SessionExchangeError
from vcopilot.models import LongLivedCredential, SessionCredential

TOKEN_EXCHANGE_URL = "https://api.github.com/copilot_internal/v2/token"
DEFAULT_SESSION_LIFETIME_SECONDS = 30 * 60
MAX_EXCHANGE_ATTEMPTS = 3

EXCHANGE_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "GithubCopilot/1.250.0",
    "Editor-Version": "vscode/1.95.0",
    "Editor-Plugin-Version": "copilot/1.250.0",
    "X-GitHub-Api-Version": "2024-12-15",
}


def compute_expiry(data: dict[str, Any], now: float) -> float:
    """Work out when a freshly exchanged session token expires.

    ``refresh_in`` (seconds from now) wins over ``expires_at`` (epoch seconds,
    epoch milliseconds or ISO-8601); with neither, assume 30 minutes.
    """
    refresh_in = data.get("refresh_in")
    if isinstance(refresh_in, (int, float)) and refresh_in > 0:
        return now + float(refresh_in)

    expires_at = data.get("expires_at")
    if isinstance(expires_at, (int, float)) and expires_at > 0:
        # Anything this large is milliseconds.
        return float(expires_at) / 1000.0 if expires_at > 1e12 else float(expires_at)
    if isinstance(expires_at, str) and expires_at:
        with contextlib.suppress(ValueError):
            return datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()

    return now + DEFAULT_SESSION_LIFETIME_SECONDS


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Session exchange attempt {retry_state.attempt_number}/{MAX_EXCHANGE_ATTEMPTS} failed: {exc}. Retrying..."
    )


class SessionExchanger:
    """Turns a long-lived GitHub token into a short-lived Copilot session token."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        client: httpx.AsyncClient | None = None,
        exchange_url: str = TOKEN_EXCHANGE_URL,
        max_attempts: int = MAX_EXCHANGE_ATTEMPTS,
        wait=None,
    ):
        self._store = store
        self._client = client
        self._exchange_url = exchange_url
        self._max_attempts = max_attempts
        self._wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=4)
        self._session: SessionCredential | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> SessionCredential | None:
        return self._session

    def invalidate(self) -> None:
        """Forget the session everywhere so the next call exchanges again."""
        self._session = None
        self._store.clear_session()

    async def ensure_session(self, long_lived: LongLivedCredential) -> SessionCredential:
        if self._session is not None and self._session.is_fresh():
            return self._session

        async with self._lock:
            if self._session is not None and self._session.is_fresh():
                return self._session

            cached = self._store.read_session()
            if cached is not None:
                logger.debug("Using cached session token")
                self._session = cached
                return cached

            session = await self._exchange_with_retry(long_lived)
            try:
                self._store.write_session(session)
            except OSError as ex:
                logger.warning(f"Could not persist session token: {ex}")
            self._session = session
            return session

    async def _exchange_with_retry(self, long_lived: LongLivedCredential) -> SessionCredential:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_not_exception_type(NoSubscriptionError),
                wait=self._wait,
                before_sleep=_log_retry,
            ):
                with attempt:
                    return await self._exchange_once(long_lived)
        except RetryError as ex:
            last = ex.last_attempt.exception()
            raise SessionExchangeError(
                f"Session exchange failed after {self._max_attempts} attempts: {last}"
            ) from last
        raise SessionExchangeError("Session exchange failed: no attempt was made")

    async def _exchange_once(self, long_lived: LongLivedCredential) -> SessionCredential:
        headers = dict(EXCHANGE_HEADERS)
        headers["Authorization"] = f"token {long_lived.token}"

        async with self._http() as client:
            resp = await client.get(self._exchange_url, headers=headers)

        if resp.status_code == 404:
            raise NoSubscriptionError(
                "Session exchange failed: no active Copilot subscription for this GitHub account"
            )
        if resp.status_code >= 400:
            raise SessionExchangeError(f"HTTP {resp.status_code}: {resp.text[:200]}")

        data = resp.json()
        token = data.get("token")
        if not token:
            raise SessionExchangeError(f"no token in exchange response: {resp.text[:200]}")

        endpoints = data.get("endpoints") or {}
        session = SessionCredential(
            token=token,
            expires_at=compute_expiry(data, time.time()),
            endpoint=endpoints.get("api") or None,
        )
        logger.debug(f"Session token exchanged, valid for {session.expires_at - time.time():.0f}s")
        return session

    def _http(self):
        if self._client is not None:
            return contextlib.nullcontext(self._client)
        return httpx.AsyncClient(timeout=10.0)
