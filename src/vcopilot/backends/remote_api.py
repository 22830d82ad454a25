from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from vcopilot.auth.manager import CredentialManager
from vcopilot.backends.base import BackendMode
from vcopilot.backends.common import default_retry_kwargs
from vcopilot.backends.sse import SSEDecoder
from vcopilot.errors import RemoteApiError, StreamTransportError
from vcopilot.models import ChatMessage, ChatRequest, ChatResult, CodeCompletions, ModelInfo, Usage

DEFAULT_ENDPOINT = "https://api.githubcopilot.com"
CODE_SUGGESTIONS = 3

EDITOR_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "GitHubCopilotChat/0.22.4",
    "Editor-Version": "vscode/1.95.0",
    "Editor-Plugin-Version": "copilot-chat/0.22.4",
    "Copilot-Integration-Id": "vscode-chat",
    "Openai-Intent": "conversation-panel",
    "X-GitHub-Api-Version": "2023-07-07",
}

# Failures that happen before the server has seen the request.
_RETRYABLE = (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError)


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return resp.text[:200]


class RemoteApiBackend:
    mode = BackendMode.REMOTE

    def __init__(
        self,
        manager: CredentialManager,
        *,
        model: str = "gpt-4o",
        endpoint: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
        retry_wait=None,
    ):
        self._manager = manager
        self._model = model
        self._endpoint = endpoint.rstrip("/") if endpoint else None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry_wait = retry_wait

    @property
    def model(self) -> str:
        return self._model

    async def aclose(self) -> None:
        await self._client.aclose()

    async def chat_once(self, request: ChatRequest) -> ChatResult:
        payload = request.to_payload(self._model, stream=False)
        logger.debug(f"Chat request: model={payload['model']}, messages={len(payload['messages'])}")

        data = await self._request_json("POST", "/chat/completions", "Copilot chat failed", payload)
        choices = data.get("choices") or []
        if not choices:
            raise RemoteApiError("Copilot chat failed: response contained no choices")

        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content") or choice.get("text") or ""
        usage = Usage.from_dict(data.get("usage"))
        logger.debug(f"Chat response: {len(content)} chars, {usage.total_tokens} tokens")

        return ChatResult(
            id=data.get("id") or f"chatcmpl-{uuid.uuid4().hex}",
            model=data.get("model") or payload["model"],
            content=content,
            messages=[*request.messages, ChatMessage(role="assistant", content=content)],
            finish_reason=choice.get("finish_reason") or "stop",
            usage=usage,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        payload = request.to_payload(self._model, stream=True)
        logger.debug(f"Chat stream started: model={payload['model']}")

        try:
            resp = await self._send("POST", "/chat/completions", payload, stream=True)
        except httpx.HTTPError as ex:
            raise RemoteApiError(f"Copilot chat failed: {ex}") from ex

        try:
            if resp.status_code >= 400:
                await resp.aread()
                raise RemoteApiError(f"Copilot chat failed: HTTP {resp.status_code}: {_error_message(resp)}")

            decoder = SSEDecoder()
            try:
                async for chunk in resp.aiter_bytes():
                    for text in decoder.feed(chunk):
                        yield text
                    if decoder.done:
                        break
                else:
                    for text in decoder.finish():
                        yield text
            except httpx.HTTPError as ex:
                raise StreamTransportError(f"Copilot chat stream interrupted: {ex}") from ex
        finally:
            await resp.aclose()

    async def list_models(self) -> list[ModelInfo]:
        return [ModelInfo.from_api(item) for item in await self.list_models_detailed()]

    async def list_models_detailed(self) -> list[dict[str, Any]]:
        """Full per-model metadata as returned by the API."""
        try:
            resp = await self._send("GET", "/models")
        except httpx.HTTPError as ex:
            raise RemoteApiError(f"Failed to get models: {ex}") from ex
        if resp.status_code >= 400:
            raise RemoteApiError(f"Failed to get models: HTTP {resp.status_code}: {_error_message(resp)}")
        try:
            data = resp.json()
        except ValueError as ex:
            raise RemoteApiError("Failed to get models: invalid JSON response") from ex
        items = data.get("data") if isinstance(data, dict) else data
        return [item for item in items or [] if isinstance(item, dict) and item.get("id")]

    async def complete(
        self,
        prompt: str,
        *,
        suffix: str | None = None,
        max_tokens: int = 100,
        temperature: float = 0.1,
        stop: list[str] | None = None,
    ) -> str:
        """Plain text completion."""
        payload: dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if suffix:
            payload["suffix"] = suffix
        if stop:
            payload["stop"] = stop

        data = await self._request_json("POST", "/completions", "Copilot completion failed", payload)
        choices = data.get("choices") or []
        return (choices[0].get("text") or "") if choices else ""

    async def complete_code(
        self,
        prefix: str,
        *,
        suffix: str = "",
        language: str | None = None,
        max_tokens: int = 100,
    ) -> CodeCompletions:
        payload: dict[str, Any] = {
            "model": self._model,
            "prompt": prefix,
            "suffix": suffix,
            "max_tokens": max_tokens,
            "temperature": 0.1,
            "top_p": 0.95,
            "n": CODE_SUGGESTIONS,
            # Escaped and literal blank lines both end a suggestion.
            "stop": ["\\n\\n", "\n\n"],
        }
        logger.debug(f"Code completion: language={language}, prefix={len(prefix)} chars, suffix={len(suffix)} chars")

        data = await self._request_json("POST", "/completions", "Copilot code completion failed", payload)
        choices = [c for c in data.get("choices") or [] if isinstance(c, dict)]
        return CodeCompletions(
            completions=[c.get("text") or "" for c in choices],
            indices=[int(c.get("index", i)) for i, c in enumerate(choices)],
        )

    async def get_usage(self) -> Usage:
        """Token usage the API reports for this account."""
        return Usage.from_dict(await self._request_json("GET", "/usage", "Failed to get usage"))

    async def _request_json(
        self,
        method: str,
        path: str,
        prefix: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            resp = await self._send(method, path, payload)
        except httpx.HTTPError as ex:
            raise RemoteApiError(f"{prefix}: {ex}") from ex
        if resp.status_code >= 400:
            raise RemoteApiError(f"{prefix}: HTTP {resp.status_code}: {_error_message(resp)}")
        try:
            data = resp.json()
        except ValueError as ex:
            raise RemoteApiError(f"{prefix}: invalid JSON response") from ex
        if not isinstance(data, dict):
            raise RemoteApiError(f"{prefix}: unexpected response shape")
        if data.get("error"):
            raise RemoteApiError(f"{prefix}: {_error_message(resp)}")
        return data

    async def _send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """Send with a fresh session token; a 401 forces one re-exchange."""
        async for attempt in AsyncRetrying(**default_retry_kwargs(_RETRYABLE, wait=self._retry_wait)):
            with attempt:
                resp = await self._send_once(method, path, payload, stream=stream)
                if resp.status_code == 401:
                    logger.info("Session token rejected, exchanging for a new one")
                    await resp.aclose()
                    self._manager.invalidate_session()
                    resp = await self._send_once(method, path, payload, stream=stream)
                return resp
        raise RemoteApiError(f"{method} {path}: no attempt was made")

    async def _send_once(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        *,
        stream: bool,
    ) -> httpx.Response:
        session = await self._manager.session()
        base = self._endpoint or session.endpoint or DEFAULT_ENDPOINT
        headers = dict(EDITOR_HEADERS)
        headers["Authorization"] = f"Bearer {session.token}"
        if stream:
            headers["Accept"] = "text/event-stream"

        request = self._client.build_request(method, f"{base.rstrip('/')}{path}", headers=headers, json=payload)
        return await self._client.send(request, stream=stream)
