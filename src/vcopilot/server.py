"""OpenAI-compatible HTTP front end over the dispatch router.

Point any OpenAI client at ``http://127.0.0.1:<port>/v1``; the API key is ignored.
"""

from __future__ import annotations

import contextlib
import json
import os
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from vcopilot.errors import VCopilotError
from vcopilot.models import ChatRequest, ModelInfo
from vcopilot.router import DispatchRouter

MODEL_CREATED = 1700000000


def _error(status: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": {"message": message, "type": error_type}})


def _model_entry(model: ModelInfo) -> dict[str, Any]:
    return {
        "id": model.id,
        "object": "model",
        "created": MODEL_CREATED,
        "owned_by": model.vendor or "vcopilot",
        "root": model.id,
        "parent": None,
    }


def _chunk(request_id: str, created: int, model: str, delta: dict, finish_reason: str | None = None) -> str:
    body = {
        "id": request_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(body)}\n\n"


def write_pid_file(path: Path, pid: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid if pid is not None else os.getpid()))


def remove_pid_file(path: Path) -> None:
    """Remove the pid file, unless another server instance has taken it over."""
    with contextlib.suppress(FileNotFoundError):
        if path.read_text().strip() == str(os.getpid()):
            path.unlink()


def create_app(router: DispatchRouter, *, pid_file: Path | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if pid_file is not None:
            write_pid_file(pid_file)
        yield
        if pid_file is not None:
            remove_pid_file(pid_file)
        await router.aclose()

    app = FastAPI(title="vcopilot", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(VCopilotError)
    async def vcopilot_error(request: Request, ex: VCopilotError) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {ex}")
        return _error(500, str(ex), "server_error")

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        models = await router.list_models()
        return {"object": "list", "data": [_model_entry(m) for m in models]}

    @app.get("/v1/models/{model_id:path}")
    async def get_model(model_id: str):
        for model in await router.list_models():
            if model.id == model_id:
                return _model_entry(model)
        return _error(404, f"Model '{model_id}' not found", "invalid_request_error")

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be JSON", "invalid_request_error")
        if not isinstance(body, dict):
            return _error(400, "Request body must be a JSON object", "invalid_request_error")

        stop = body.get("stop")
        try:
            chat = ChatRequest.from_dicts(
                body.get("messages") or [],
                model=body.get("model"),
                max_tokens=body.get("max_tokens"),
                temperature=body.get("temperature"),
                top_p=body.get("top_p"),
                stop=[stop] if isinstance(stop, str) else stop,
                stream=body.get("stream") is True,
            )
            model = router.model_for(chat)
        except ValueError as ex:
            return _error(400, str(ex), "invalid_request_error")

        request_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
        created = int(time.time())
        logger.debug(f"model={model} messages={len(chat.messages)} stream={chat.stream}")

        if chat.stream:
            return StreamingResponse(
                _stream_events(router, chat, request_id, created, model),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        result = await router.complete(chat)
        return {
            "id": result.id or request_id,
            "object": "chat.completion",
            "created": created,
            "model": result.model or model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": result.content},
                    "finish_reason": result.finish_reason,
                }
            ],
            "usage": result.usage.to_dict(),
        }

    @app.get("/health")
    @app.get("/")
    async def health() -> dict[str, Any]:
        models = await router.list_models()
        return {
            "status": "ok",
            "backends": [mode.value for mode in router.modes],
            "default_backend": router.default_mode.value,
            "models": [m.id for m in models],
        }

    return app


async def _stream_events(
    router: DispatchRouter,
    chat: ChatRequest,
    request_id: str,
    created: int,
    model: str,
) -> AsyncIterator[str]:
    try:
        async for fragment in router.stream(chat):
            if fragment.kind == "start":
                yield _chunk(request_id, created, model, {"role": "assistant"})
            elif fragment.kind == "content":
                yield _chunk(request_id, created, model, {"content": fragment.text})
            else:
                yield _chunk(request_id, created, model, {}, fragment.finish_reason or "stop")
    except VCopilotError as ex:
        # Headers are already sent, so the failure travels in-band.
        logger.error(f"Stream failed: {ex}")
        yield f"data: {json.dumps({'error': {'message': str(ex), 'type': 'server_error'}})}\n\n"
    yield "data: [DONE]\n\n"


def run_server(app: FastAPI, port: int, *, host: str = "127.0.0.1") -> None:
    base_url = f"http://{host}:{port}/v1"
    logger.info(f"OpenAI-compatible API listening on {base_url} (any API key works)")
    logger.info(f"Try: curl {base_url}/chat/completions -H 'Content-Type: application/json' "
                "-d '{\"model\":\"chatgpt\",\"messages\":[{\"role\":\"user\",\"content\":\"hello\"}]}'")
    uvicorn.run(app, host=host, port=port, log_level="warning")
