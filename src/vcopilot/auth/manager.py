from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from vcopilot.auth.resolver import CredentialResolver
from vcopilot.auth.session import SessionExchanger
from vcopilot.auth.store import CredentialStore
from vcopilot.models import LongLivedCredential, SessionCredential


@dataclass
class AuthStatus:
    logged_in: bool
    source: str | None
    token_timestamp: str | None
    session_seconds_left: float | None
    config_dir: str
    masked_token: str | None = None


def mask_token(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


class CredentialManager:
    """Owns the auth state for the lifetime of a process.

    Resolves the long-lived token once, then hands out session tokens through
    the exchanger, which refreshes them as they approach expiry.
    """

    def __init__(
        self,
        store: CredentialStore,
        resolver: CredentialResolver,
        exchanger: SessionExchanger,
        *,
        override: str | None = None,
        force_external: bool = False,
        allow_device_flow: bool = True,
    ):
        self._store = store
        self._resolver = resolver
        self._exchanger = exchanger
        self._override = override
        self._force_external = force_external
        self._allow_device_flow = allow_device_flow
        self._long_lived: LongLivedCredential | None = None

    @classmethod
    def create(
        cls,
        store: CredentialStore,
        *,
        override: str | None = None,
        force_external: bool = False,
        allow_device_flow: bool = True,
    ) -> CredentialManager:
        return cls(
            store,
            CredentialResolver(store),
            SessionExchanger(store),
            override=override,
            force_external=force_external,
            allow_device_flow=allow_device_flow,
        )

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def long_lived(self) -> LongLivedCredential:
        if self._long_lived is None:
            self._long_lived = await self._resolver.resolve(
                self._override,
                force_external=self._force_external,
                allow_device_flow=self._allow_device_flow,
            )
            logger.debug(f"Using GitHub token from {self._long_lived.source}")
        return self._long_lived

    async def session(self) -> SessionCredential:
        return await self._exchanger.ensure_session(await self.long_lived())

    def invalidate_session(self) -> None:
        self._exchanger.invalidate()

    async def login(self) -> LongLivedCredential:
        self._exchanger.invalidate()
        self._long_lived = await self._resolver.login()
        return self._long_lived

    def logout(self) -> None:
        self._store.clear()
        self._exchanger.invalidate()
        self._long_lived = None
        logger.info("Logged out, cached credentials removed")

    def status(self) -> AuthStatus:
        credential = self._resolver.resolve_offline(self._override, force_external=self._force_external)
        return AuthStatus(
            logged_in=credential is not None,
            source=credential.source if credential else None,
            token_timestamp=credential.timestamp if credential else None,
            session_seconds_left=self._store.session_seconds_left(),
            config_dir=str(self._store.config_dir),
            masked_token=mask_token(credential.token) if credential else None,
        )
