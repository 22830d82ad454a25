from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from vcopilot.models import ChatRequest, ChatResult, ModelInfo, StreamFragment

if TYPE_CHECKING:
    from vcopilot.auth.manager import CredentialManager
    from vcopilot.interactive.session import InteractiveSession


class BackendMode(StrEnum):
    REMOTE = "remote"
    INTERACTIVE = "interactive"
    LOCAL = "local"


@runtime_checkable
class ChatBackend(Protocol):
    mode: BackendMode

    async def chat_once(self, request: ChatRequest) -> ChatResult:
        """Send the request and wait for the whole reply."""
        ...

    def stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield reply text fragments in order as they arrive."""
        ...

    async def list_models(self) -> list[ModelInfo]:
        ...

    async def aclose(self) -> None:
        ...


def create_backend(
    mode: str,
    *,
    manager: CredentialManager | None = None,
    model: str = "gpt-4o",
    endpoint: str | None = None,
    local_url: str | None = None,
    local_api_key: str | None = None,
    interactive_session: InteractiveSession | None = None,
    timeout: float = 120.0,
) -> ChatBackend:
    """Factory: create a ChatBackend for a mode."""
    name = BackendMode(mode.strip().lower())
    if name is BackendMode.REMOTE:
        if manager is None:
            raise ValueError("The remote backend needs a CredentialManager")
        from vcopilot.backends.remote_api import RemoteApiBackend
        return RemoteApiBackend(manager, model=model, endpoint=endpoint, timeout=timeout)
    if name is BackendMode.LOCAL:
        if not local_url:
            raise ValueError("The local backend needs LocalEndpointUrl to be set")
        from vcopilot.backends.local_endpoint import LocalEndpointBackend
        return LocalEndpointBackend(local_url, api_key=local_api_key, model=model, timeout=timeout)
    if interactive_session is None:
        raise ValueError("The interactive backend needs an InteractiveSession")
    from vcopilot.backends.interactive import InteractiveBackend
    return InteractiveBackend(interactive_session)


async def consume_stream(
    fragments: AsyncIterator[StreamFragment],
    on_fragment: Callable[[StreamFragment], Awaitable[Any] | Any],
    on_error: Callable[[BaseException], Awaitable[Any] | Any] | None = None,
) -> None:
    """Drive a fragment iterator through callbacks.

    ``on_error`` sees the failure first, then the error is re-raised.
    """
    try:
        async for fragment in fragments:
            result = on_fragment(fragment)
            if isinstance(result, Awaitable):
                await result
    except Exception as ex:
        if on_error is not None:
            result = on_error(ex)
            if isinstance(result, Awaitable):
                await result
        raise
