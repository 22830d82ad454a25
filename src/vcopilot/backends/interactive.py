from __future__ import annotations

import uuid
from collections.abc import AsyncIterator

from vcopilot.backends.base import BackendMode
from vcopilot.interactive.session import InteractiveSession
from vcopilot.models import ChatMessage, ChatRequest, ChatResult, ModelInfo, Usage

INTERACTIVE_MODEL_ID = "chatgpt"


class InteractiveBackend:
    """Web chat UI behind the ChatBackend interface.

    The browser only yields the finished reply, so a stream is always exactly
    one fragment.
    """

    mode = BackendMode.INTERACTIVE

    def __init__(self, session: InteractiveSession):
        self._session = session

    async def aclose(self) -> None:
        return None

    async def chat_once(self, request: ChatRequest) -> ChatResult:
        prompt = request.flatten_prompt()
        content = await self._session.ask(prompt)
        return ChatResult(
            id=f"chatcmpl-{uuid.uuid4().hex}",
            model=INTERACTIVE_MODEL_ID,
            content=content,
            messages=[*request.messages, ChatMessage(role="assistant", content=content)],
            usage=Usage.estimate(prompt, content),
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        content = await self._session.ask(request.flatten_prompt())
        yield content

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=INTERACTIVE_MODEL_ID,
                name="ChatGPT (browser)",
                vendor="openai",
                supports_streaming=False,
            )
        ]
