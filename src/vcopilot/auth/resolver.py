from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

from loguru import logger

from vcopilot.auth.device_flow import DeviceFlow
from vcopilot.auth.external import find_external_session
from vcopilot.auth.store import CredentialStore, utc_now
from vcopilot.errors import CredentialAbsentError
from vcopilot.models import LongLivedCredential

TOKEN_ENV_VARS = ("GITHUB_TOKEN", "COPILOT_TOKEN")


class CredentialResolver:
    """Finds a long-lived GitHub token, trying each source in priority order.

    override > environment > editor session (only when forced) > disk cache >
    interactive device flow. Only the device flow touches the network.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        env: Mapping[str, str] | None = None,
        device_flow: Callable[[], Awaitable[str]] | None = None,
        external_paths: list[Path] | None = None,
    ):
        self._store = store
        self._env = env
        self._device_flow = device_flow or DeviceFlow().run
        self._external_paths = external_paths

    def resolve_offline(
        self,
        override: str | None = None,
        *,
        force_external: bool = False,
    ) -> LongLivedCredential | None:
        if override:
            logger.debug("Token from explicit override")
            return LongLivedCredential(token=override, source="override")

        env = os.environ if self._env is None else self._env
        for name in TOKEN_ENV_VARS:
            value = env.get(name, "").strip()
            if value:
                logger.debug(f"Token from environment ({name})")
                return LongLivedCredential(token=value, source=f"env:{name}")

        if force_external:
            found = find_external_session(self._external_paths)
            if found is not None:
                return found
            logger.warning("Editor Copilot session not found, falling back to cached token")

        cached = self._store.read_long_lived()
        if cached is not None:
            logger.debug("Token from cache")
            return cached

        return None

    async def resolve(
        self,
        override: str | None = None,
        *,
        force_external: bool = False,
        allow_device_flow: bool = True,
    ) -> LongLivedCredential:
        credential = self.resolve_offline(override, force_external=force_external)
        if credential is not None:
            return credential

        if not allow_device_flow:
            raise CredentialAbsentError(
                "No GitHub token found. Set GITHUB_TOKEN or COPILOT_TOKEN, "
                "or run `vcopilot login` first."
            )

        return await self.login()

    async def login(self) -> LongLivedCredential:
        """Run the device flow unconditionally and persist the new token."""
        token = await self._device_flow()
        credential = LongLivedCredential(token=token, timestamp=utc_now(), source="device_flow")
        self._store.write_long_lived(credential)
        return credential
