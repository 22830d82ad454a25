import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from vcopilot import assist
from vcopilot.app_config import VALID_MODES, load_json_config, parse_app_config, resolve_runtime_env
from vcopilot.backends.base import BackendMode, consume_stream
from vcopilot.bootstrap import AppRuntime, bootstrap_runtime
from vcopilot.errors import VCopilotError
from vcopilot.interactive.browser import spawn_detached
from vcopilot.models import ChatMessage, ChatRequest, StreamFragment
from vcopilot.server import create_app, run_server, write_pid_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vcopilot", description="Copilot and ChatGPT from the command line")
    parser.add_argument("--token", help="GitHub token to use instead of the environment or cache")
    parser.add_argument("--mode", choices=VALID_MODES, help="backend to route requests to")
    parser.add_argument("--model", help="model id (use 'chatgpt' for the browser backend)")
    parser.add_argument("--sync", action="store_true", default=None, help="interactive mode without a watcher")
    parser.add_argument("--vscode", action="store_true", default=None, help="reuse the VS Code Copilot login")
    parser.add_argument("--config-dir", help="where tokens and job files live")
    parser.add_argument("--debug", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="send a prompt (reads stdin when no prompt is given)")
    chat.add_argument("prompt", nargs="*")
    chat.add_argument("--system", help="system message")
    chat.add_argument("--no-stream", action="store_true")

    complete = sub.add_parser("complete", help="plain text completion from the Copilot API")
    complete.add_argument("prompt", nargs="+")
    complete.add_argument("--suffix", help="text that follows the insertion point")
    complete.add_argument("--code", action="store_true", help="show every code suggestion")
    complete.add_argument("--language")

    models = sub.add_parser("models", help="list available models")
    models.add_argument("--json", action="store_true", help="print full model metadata")

    sub.add_parser("login", help="sign in with the GitHub device flow")
    sub.add_parser("logout", help="remove cached credentials")
    sub.add_parser("status", help="show cached credential state")
    sub.add_parser("usage", help="show token usage reported by the Copilot API")

    serve = sub.add_parser("serve", help="run the OpenAI-compatible API server")
    serve.add_argument("--port", type=int)
    serve.add_argument("--detached", action="store_true", help="run in the background and write a pid file")

    explain = sub.add_parser("explain", help="explain a source file ('-' for stdin)")
    explain.add_argument("file")

    for name in ("refactor", "test"):
        p = sub.add_parser(name, help=f"{name} a source file ('-' for stdin)")
        p.add_argument("file")
        p.add_argument("--language", default=None)

    debug = sub.add_parser("debug", help="analyse an error message")
    debug.add_argument("error")
    debug.add_argument("--context", help="file with surrounding code or logs")

    return parser


_LANGUAGES = {".py": "python", ".js": "javascript", ".ts": "typescript", ".go": "go", ".rs": "rust", ".java": "java"}


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _language_for(path: str, explicit: str | None) -> str:
    return explicit or _LANGUAGES.get(Path(path).suffix.lower(), "python")


async def _chat(runtime: AppRuntime, args: argparse.Namespace) -> None:
    prompt = " ".join(args.prompt).strip()
    if not prompt and not sys.stdin.isatty():
        prompt = sys.stdin.read().strip()
    if not prompt:
        raise VCopilotError("No prompt given")

    messages = []
    if args.system:
        messages.append(ChatMessage(role="system", content=args.system))
    messages.append(ChatMessage(role="user", content=prompt))
    request = ChatRequest(messages=messages, model=args.model)

    if args.no_stream:
        result = await runtime.router.complete(request, args.mode)
        print(result.content)
        return

    def on_fragment(fragment: StreamFragment) -> None:
        if fragment.kind == "content":
            sys.stdout.write(fragment.text)
            sys.stdout.flush()
        elif fragment.kind == "stop":
            sys.stdout.write("\n")

    await consume_stream(runtime.router.stream(request, args.mode), on_fragment)


async def _models(runtime: AppRuntime, args: argparse.Namespace) -> None:
    models = await runtime.router.list_models(refresh=True)
    if args.json:
        print(json.dumps([m.raw or {"id": m.id, "name": m.name} for m in models], indent=2))
        return
    for model in models:
        extra = f" ({model.context_window:,} ctx)" if model.context_window else ""
        print(f"{model.id}{extra}")


def _remote_backend(runtime: AppRuntime):
    backend = runtime.router.backend(BackendMode.REMOTE)
    if backend is None:
        raise VCopilotError("This command needs the remote Copilot backend")
    return backend


async def _complete(runtime: AppRuntime, args: argparse.Namespace) -> None:
    backend = _remote_backend(runtime)
    prompt = " ".join(args.prompt)
    if not args.code:
        print(await backend.complete(prompt, suffix=args.suffix))
        return

    result = await backend.complete_code(prompt, suffix=args.suffix or "", language=args.language)
    for index, text in zip(result.indices, result.completions):
        print(f"--- suggestion {index + 1} ---")
        print(text)


async def _usage(runtime: AppRuntime) -> None:
    usage = await _remote_backend(runtime).get_usage()
    print(f"Prompt tokens:     {usage.prompt_tokens:,}")
    print(f"Completion tokens: {usage.completion_tokens:,}")
    print(f"Total tokens:      {usage.total_tokens:,}")


def _status(runtime: AppRuntime) -> None:
    status = runtime.manager.status()
    print(f"Config dir: {status.config_dir}")
    if not status.logged_in:
        print("Not logged in. Run `vcopilot login` or set GITHUB_TOKEN.")
        return
    print(f"GitHub token: {status.source}" + (f" (saved {status.token_timestamp})" if status.token_timestamp else ""))
    print(f"Token: {status.masked_token}")
    if status.session_seconds_left is None:
        print("Session token: none cached")
    elif status.session_seconds_left <= 0:
        print("Session token: expired")
    else:
        print(f"Session token: valid for {status.session_seconds_left / 60:.0f} min")


async def run_command(runtime: AppRuntime, args: argparse.Namespace) -> None:
    router = runtime.router
    mode = args.mode

    if args.command == "chat":
        await _chat(runtime, args)
    elif args.command == "models":
        await _models(runtime, args)
    elif args.command == "complete":
        await _complete(runtime, args)
    elif args.command == "usage":
        await _usage(runtime)
    elif args.command == "login":
        credential = await runtime.manager.login()
        await runtime.manager.session()
        print(f"Logged in, token saved to {runtime.manager.store.token_path} ({credential.source})")
    elif args.command == "logout":
        runtime.manager.logout()
    elif args.command == "status":
        _status(runtime)
    elif args.command == "explain":
        print(await assist.explain(router, _read_source(args.file), mode=mode))
    elif args.command == "refactor":
        print(await assist.refactor(router, _read_source(args.file), _language_for(args.file, args.language), mode=mode))
    elif args.command == "test":
        print(await assist.generate_tests(router, _read_source(args.file), _language_for(args.file, args.language), mode=mode))
    elif args.command == "debug":
        context = Path(args.context).read_text(encoding="utf-8") if args.context else None
        print(await assist.debug_error(router, args.error, context, mode=mode))


def _serve_detached(app, argv: list[str]) -> int:
    child = spawn_detached([sys.executable, "-m", "vcopilot", *[a for a in argv if a != "--detached"]])
    pid_file = Path(app.config_dir) / "serve.pid"
    write_pid_file(pid_file, child.pid)
    print(f"Server started in background (pid {child.pid})")
    print(f"pid file: {pid_file}")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    config = load_json_config()
    if args.config_dir:
        config["ConfigDir"] = args.config_dir
    app = parse_app_config(config)
    if args.model:
        app = dataclasses.replace(app, model=args.model)
    if args.command == "serve" and args.detached:
        return _serve_detached(app, sys.argv[1:] if argv is None else list(argv))

    runtime = bootstrap_runtime(
        app,
        resolve_runtime_env(),
        token_override=args.token,
        mode=args.mode,
        sync=args.sync,
        force_external=args.vscode,
        allow_device_flow=args.command != "serve",
        debug=args.debug,
    )

    if args.command == "serve":
        port = args.port or app.serve_port
        run_server(create_app(runtime.router, pid_file=runtime.config_dir / "serve.pid"), port)
        return 0

    async def _run() -> None:
        try:
            await run_command(runtime, args)
        finally:
            await runtime.router.aclose()

    try:
        asyncio.run(_run())
    except VCopilotError as ex:
        logger.error(str(ex))
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
