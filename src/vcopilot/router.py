from __future__ import annotations

import time
from collections.abc import AsyncIterator

from loguru import logger

from vcopilot.backends.base import BackendMode, ChatBackend
from vcopilot.backends.interactive import INTERACTIVE_MODEL_ID
from vcopilot.errors import VCopilotError
from vcopilot.models import ChatRequest, ChatResult, ModelInfo, StreamFragment

MODEL_CACHE_TTL_SECONDS = 300.0


class DispatchRouter:
    """Picks a backend per request and gives every backend the same stream shape."""

    def __init__(
        self,
        backends: dict[BackendMode, ChatBackend],
        default_mode: BackendMode | str = BackendMode.REMOTE,
        *,
        default_model: str = "gpt-4o",
        model_cache_ttl: float = MODEL_CACHE_TTL_SECONDS,
    ):
        if not backends:
            raise ValueError("DispatchRouter needs at least one backend")
        self._backends = dict(backends)
        self._default_mode = BackendMode(default_mode)
        self._default_model = default_model
        self._model_cache_ttl = model_cache_ttl
        self._models: list[ModelInfo] | None = None
        self._models_fetched_at = 0.0

    @property
    def modes(self) -> list[BackendMode]:
        return list(self._backends)

    @property
    def default_mode(self) -> BackendMode:
        return self._default_mode

    def backend(self, mode: BackendMode | str) -> ChatBackend | None:
        return self._backends.get(BackendMode(mode))

    def model_for(self, request: ChatRequest, mode: BackendMode | str | None = None) -> str:
        if request.model:
            return request.model
        if self.resolve_mode(request, mode) is BackendMode.INTERACTIVE:
            return INTERACTIVE_MODEL_ID
        return self._default_model

    def resolve_mode(self, request: ChatRequest, mode: BackendMode | str | None = None) -> BackendMode:
        if mode:
            return BackendMode(mode)
        if request.model == INTERACTIVE_MODEL_ID:
            return BackendMode.INTERACTIVE
        return self._default_mode

    def select(self, request: ChatRequest, mode: BackendMode | str | None = None) -> ChatBackend:
        chosen = self.resolve_mode(request, mode)
        backend = self._backends.get(chosen)
        if backend is None:
            configured = ", ".join(m.value for m in self._backends)
            raise VCopilotError(f"Backend '{chosen.value}' is not configured (available: {configured})")
        logger.debug(f"Routing request to {chosen.value} backend")
        return backend

    async def complete(self, request: ChatRequest, mode: BackendMode | str | None = None) -> ChatResult:
        return await self.select(request, mode).chat_once(request)

    async def stream(
        self,
        request: ChatRequest,
        mode: BackendMode | str | None = None,
    ) -> AsyncIterator[StreamFragment]:
        backend = self.select(request, mode)
        yield StreamFragment.start()
        async for text in backend.stream_chat(request):
            yield StreamFragment.content(text)
        yield StreamFragment.stop()

    async def list_models(self, *, refresh: bool = False) -> list[ModelInfo]:
        fresh = time.monotonic() - self._models_fetched_at < self._model_cache_ttl
        if self._models is not None and fresh and not refresh:
            return self._models

        ordered = [BackendMode.INTERACTIVE, BackendMode.REMOTE, BackendMode.LOCAL]
        seen: set[str] = set()
        models: list[ModelInfo] = []
        for mode in ordered:
            backend = self._backends.get(mode)
            if backend is None:
                continue
            try:
                found = await backend.list_models()
            except VCopilotError as ex:
                logger.warning(f"Could not list {mode.value} models: {ex}")
                continue
            for model in found:
                if model.id not in seen:
                    seen.add(model.id)
                    models.append(model)

        self._models = models
        self._models_fetched_at = time.monotonic()
        return models

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
