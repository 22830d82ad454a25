from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from loguru import logger

from vcopilot.errors import DeviceFlowError, DeviceFlowTimeoutError

# VS Code GitHub Copilot OAuth app
CLIENT_ID = "Iv1.b507a08c87ecfe98"
DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 120  # ~20 minutes at the default interval


@dataclass(frozen=True)
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


def _print_to_stderr(message: str) -> None:
    print(message, file=sys.stderr, flush=True)


class DeviceFlow:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        client_id: str = CLIENT_ID,
        scope: str = "read:user",
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        notify: Callable[[str], None] = _print_to_stderr,
    ):
        self._client = client
        self._client_id = client_id
        self._scope = scope
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._notify = notify

    async def run(self) -> str:
        """Run the whole flow and return the issued access token."""
        async with self._http() as client:
            code = await self.request_code(client)
            self._notify(
                f"To sign in, open {code.verification_uri} and enter the code {code.user_code}"
            )
            return await self.poll(client, code.device_code)

    async def request_code(self, client: httpx.AsyncClient) -> DeviceCode:
        try:
            resp = await client.post(
                DEVICE_CODE_URL,
                json={"client_id": self._client_id, "scope": self._scope},
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
            code = DeviceCode(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data.get("verification_uri", "https://github.com/login/device"),
                expires_in=int(data.get("expires_in", 900)),
                interval=int(data.get("interval", 5)),
            )
        except (httpx.HTTPError, ValueError, KeyError) as ex:
            raise DeviceFlowError(f"Device flow initiation failed: {ex}") from ex

        logger.debug(f"Device flow initiated: user_code={code.user_code}, uri={code.verification_uri}")
        return code

    async def poll(self, client: httpx.AsyncClient, device_code: str) -> str:
        attempts = 0
        while attempts < self._max_attempts:
            try:
                resp = await client.post(
                    ACCESS_TOKEN_URL,
                    json={
                        "client_id": self._client_id,
                        "device_code": device_code,
                        "grant_type": GRANT_TYPE,
                    },
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as ex:
                raise DeviceFlowError(f"Device flow polling failed: {ex}") from ex

            data = _json_or_empty(resp)
            error = data.get("error")

            if error == "authorization_pending" or (resp.status_code == 400 and not error):
                attempts += 1
                if attempts < self._max_attempts:
                    await asyncio.sleep(self._poll_interval)
                continue

            if error:
                raise DeviceFlowError(f"Device flow error: {data.get('error_description') or error}")

            if resp.status_code >= 400:
                raise DeviceFlowError(f"Device flow polling failed: HTTP {resp.status_code}")

            token = data.get("access_token")
            if token:
                logger.debug(f"Device flow completed after {attempts + 1} polls")
                return token

            attempts += 1
            if attempts < self._max_attempts:
                await asyncio.sleep(self._poll_interval)

        raise DeviceFlowTimeoutError(
            f"Device flow polling timeout after {self._max_attempts} attempts"
        )

    def _http(self):
        if self._client is not None:
            return contextlib.nullcontext(self._client)
        return httpx.AsyncClient(timeout=10.0, headers={"User-Agent": "GitHubCopilotChat/0.22.0"})


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
