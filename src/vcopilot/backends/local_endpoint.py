from __future__ import annotations

import uuid
from collections.abc import AsyncIterator

import openai
from loguru import logger

from vcopilot.backends.base import BackendMode
from vcopilot.errors import RemoteApiError, StreamTransportError
from vcopilot.models import ChatMessage, ChatRequest, ChatResult, ModelInfo, Usage


class LocalEndpointBackend:
    """Any OpenAI-compatible server (Ollama, LM Studio, vLLM, another proxy)."""

    mode = BackendMode.LOCAL

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o",
        timeout: float = 120.0,
        client: openai.AsyncOpenAI | None = None,
    ):
        self._model = model
        # The SDK insists on a key even when the server ignores it.
        self._client = client or openai.AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or "not-needed",
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.close()

    async def chat_once(self, request: ChatRequest) -> ChatResult:
        payload = request.to_payload(self._model, stream=False)
        try:
            response = await self._client.chat.completions.create(**payload)
        except openai.OpenAIError as ex:
            raise RemoteApiError(f"Local endpoint chat failed: {ex}") from ex

        if not response.choices:
            raise RemoteApiError("Local endpoint chat failed: response contained no choices")
        choice = response.choices[0]
        content = choice.message.content or ""
        usage = Usage.from_dict(response.usage.model_dump() if response.usage else None)

        return ChatResult(
            id=response.id or f"chatcmpl-{uuid.uuid4().hex}",
            model=response.model or payload["model"],
            content=content,
            messages=[*request.messages, ChatMessage(role="assistant", content=content)],
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        payload = request.to_payload(self._model, stream=True)
        try:
            stream = await self._client.chat.completions.create(**payload)
        except openai.OpenAIError as ex:
            raise RemoteApiError(f"Local endpoint chat failed: {ex}") from ex

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except openai.OpenAIError as ex:
            raise StreamTransportError(f"Local endpoint stream interrupted: {ex}") from ex

    async def list_models(self) -> list[ModelInfo]:
        try:
            page = await self._client.models.list()
        except openai.OpenAIError as ex:
            logger.warning(f"Local endpoint model listing failed: {ex}")
            return [ModelInfo(id=self._model, name=self._model)]
        return [ModelInfo.from_api(model.model_dump()) for model in page.data]
