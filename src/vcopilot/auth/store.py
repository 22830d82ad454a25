from __future__ import annotations

import contextlib
import time
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from vcopilot.atomic_io import atomic_write_json, read_json
from vcopilot.models import SESSION_SAFETY_BUFFER_SECONDS, LongLivedCredential, SessionCredential


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class CredentialStore:
    """On-disk home of the long-lived token and the cached session token."""

    def __init__(self, config_dir: Path):
        self._config_dir = Path(config_dir)
        self._token_path = self._config_dir / "token.json"
        self._session_path = self._config_dir / "session.json"

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def token_path(self) -> Path:
        return self._token_path

    @property
    def session_path(self) -> Path:
        return self._session_path

    def read_long_lived(self) -> LongLivedCredential | None:
        data = read_json(self._token_path)
        if data is None:
            return None
        token = data.get("token")
        if not isinstance(token, str) or not token:
            return None
        timestamp = data.get("timestamp")
        return LongLivedCredential(
            token=token,
            timestamp=timestamp if isinstance(timestamp, str) else None,
            source="store",
        )

    def write_long_lived(self, credential: LongLivedCredential) -> None:
        atomic_write_json(
            self._token_path,
            {"token": credential.token, "timestamp": credential.timestamp or utc_now()},
        )
        logger.debug(f"Long-lived token saved to {self._token_path}")

    def read_session(self, now: float | None = None) -> SessionCredential | None:
        data = read_json(self._session_path)
        if data is None:
            return None
        token = data.get("token")
        expires_at_ms = data.get("expiresAt")
        if not isinstance(token, str) or not token:
            return None
        try:
            expires_at = float(expires_at_ms) / 1000.0
        except (TypeError, ValueError):
            return None
        endpoint = data.get("endpoint")
        session = SessionCredential(
            token=token,
            expires_at=expires_at,
            endpoint=endpoint if isinstance(endpoint, str) and endpoint else None,
        )
        if not session.is_fresh(now, SESSION_SAFETY_BUFFER_SECONDS):
            logger.debug("Cached session token expired or expiring soon")
            return None
        return session

    def write_session(self, session: SessionCredential) -> None:
        data: dict = {
            "token": session.token,
            "expiresAt": int(session.expires_at * 1000),
            "timestamp": utc_now(),
        }
        if session.endpoint:
            data["endpoint"] = session.endpoint
        atomic_write_json(self._session_path, data)
        logger.debug(f"Session token saved, expires {datetime.fromtimestamp(session.expires_at, UTC).isoformat()}")

    def clear_session(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._session_path.unlink()

    def clear(self) -> None:
        for path in (self._token_path, self._session_path):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
                logger.debug(f"Removed {path}")

    def session_seconds_left(self) -> float | None:
        """Raw remaining lifetime of the cached session, ignoring the buffer."""
        data = read_json(self._session_path)
        if not data or "expiresAt" not in data:
            return None
        try:
            return float(data["expiresAt"]) / 1000.0 - time.time()
        except (TypeError, ValueError):
            return None
