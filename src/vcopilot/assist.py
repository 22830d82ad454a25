"""Canned prompts for common code tasks, all routed through the chat backends."""

from __future__ import annotations

from vcopilot.models import ChatMessage, ChatRequest
from vcopilot.router import DispatchRouter


def _fence(code: str, language: str = "") -> str:
    return f"```{language}\n{code}\n```"


async def _ask(router: DispatchRouter, system: str, user: str, max_tokens: int, mode: str | None) -> str:
    request = ChatRequest(
        messages=[ChatMessage(role="system", content=system), ChatMessage(role="user", content=user)],
        max_tokens=max_tokens,
    )
    result = await router.complete(request, mode)
    return result.content


async def explain(router: DispatchRouter, code: str, *, mode: str | None = None) -> str:
    return await _ask(
        router,
        "You are a helpful code explanation assistant. Explain the given code clearly and concisely.",
        f"Explain this code:\n{_fence(code)}",
        500,
        mode,
    )


async def refactor(router: DispatchRouter, code: str, language: str = "python", *, mode: str | None = None) -> str:
    return await _ask(
        router,
        f"You are a code refactoring expert. Refactor the given {language} code to improve readability, "
        "performance, or maintainability. Return ONLY the refactored code.",
        f"Refactor this {language} code:\n{_fence(code, language)}",
        1000,
        mode,
    )


async def generate_tests(
    router: DispatchRouter, code: str, language: str = "python", *, mode: str | None = None
) -> str:
    return await _ask(
        router,
        f"You are a test generation expert. Generate comprehensive unit tests for the given {language} code. "
        "Return ONLY the test code.",
        f"Generate tests for this {language} code:\n{_fence(code, language)}",
        1000,
        mode,
    )


async def debug_error(
    router: DispatchRouter, error: str, context: str | None = None, *, mode: str | None = None
) -> str:
    user = f"Error: {error}"
    if context:
        user += f"\n\nContext:\n{context}"
    return await _ask(
        router,
        "You are a helpful debugging assistant. Analyze the error and suggest solutions.",
        user,
        500,
        mode,
    )
