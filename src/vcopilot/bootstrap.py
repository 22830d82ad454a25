from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from vcopilot.app_config import AppConfig, RuntimeEnv
from vcopilot.auth.manager import CredentialManager
from vcopilot.auth.resolver import CredentialResolver
from vcopilot.auth.session import SessionExchanger
from vcopilot.auth.store import CredentialStore
from vcopilot.backends.base import BackendMode, ChatBackend, create_backend
from vcopilot.interactive.browser import RelayClient
from vcopilot.interactive.jobs import JobStore
from vcopilot.interactive.session import InteractiveSession
from vcopilot.logging_config import setup_logging
from vcopilot.router import DispatchRouter


@dataclass
class AppRuntime:
    router: DispatchRouter
    manager: CredentialManager
    job_store: JobStore
    config_dir: Path
    log_descriptions: list[str]


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    token_override: str | None = None,
    mode: str | None = None,
    sync: bool | None = None,
    force_external: bool | None = None,
    allow_device_flow: bool = True,
    debug: bool = False,
) -> AppRuntime:
    debug = debug or env.debug
    log_descriptions = setup_logging(
        level="DEBUG" if debug else app.log_level,
        consumers=app.log_consumers or [{"type": "console", "verbose": debug}],
    )

    config_dir = Path(app.config_dir)
    store = CredentialStore(config_dir)
    token_env = {"GITHUB_TOKEN": env.github_token or "", "COPILOT_TOKEN": env.copilot_token or ""}
    manager = CredentialManager(
        store,
        CredentialResolver(store, env=token_env),
        SessionExchanger(store),
        override=token_override,
        force_external=app.force_external_session if force_external is None else force_external,
        allow_device_flow=allow_device_flow,
    )

    job_store = JobStore(config_dir / "jobs")
    session = InteractiveSession(
        job_store,
        RelayClient(app.relay_host, app.relay_port, command=app.relay_command),
        sync=app.sync if sync is None else sync,
        chat_url=app.chat_url,
        debug=debug,
        job_max_age_seconds=app.job_max_age_hours * 3600,
    )

    backends: dict[BackendMode, ChatBackend] = {
        BackendMode.REMOTE: create_backend(
            BackendMode.REMOTE,
            manager=manager,
            model=app.model,
            endpoint=app.remote_api_endpoint,
            timeout=app.request_timeout,
        ),
        BackendMode.INTERACTIVE: create_backend(BackendMode.INTERACTIVE, interactive_session=session),
    }
    if app.local_endpoint_url:
        backends[BackendMode.LOCAL] = create_backend(
            BackendMode.LOCAL,
            model=app.model,
            local_url=app.local_endpoint_url,
            local_api_key=app.local_endpoint_api_key or env.local_api_key,
            timeout=app.request_timeout,
        )

    router = DispatchRouter(backends, default_mode=mode or app.mode, default_model=app.model)

    return AppRuntime(
        router=router,
        manager=manager,
        job_store=job_store,
        config_dir=config_dir,
        log_descriptions=log_descriptions,
    )
