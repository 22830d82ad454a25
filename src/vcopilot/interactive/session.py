from __future__ import annotations

import os
import sys
from collections.abc import Callable

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from vcopilot.errors import InteractiveError
from vcopilot.interactive.browser import (
    DEFAULT_CHAT_URL,
    STOP_BUTTON_SELECTOR,
    RelayClient,
    connect_browser,
    navigate_to_chat,
    spawn_detached,
    submit_prompt,
    wait_for_generation_start,
)
from vcopilot.interactive.extract import EXTRACT_RESPONSE_JS
from vcopilot.interactive.jobs import DEFAULT_MAX_AGE_SECONDS, JobStore
from vcopilot.interactive.poller import POLL_TIMEOUT_SECONDS, poll_for_completion
from vcopilot.interactive.sender import Connector, dispatch_prompt

SYNC_GENERATION_TIMEOUT_SECONDS = 120.0
CONFIG_DIR_ENV = "VCOPILOT_CONFIG_DIR"


def spawn_watcher(job_id: str, *, config_dir: str | None = None, debug: bool = False) -> int:
    args = [sys.executable, "-m", "vcopilot.interactive.watcher", job_id]
    if debug:
        args.append("--debug")
    env = dict(os.environ)
    if config_dir:
        args += ["--config-dir", config_dir]
        env[CONFIG_DIR_ENV] = config_dir
    return spawn_detached(args, env=env).pid


class InteractiveSession:
    """Asks the web chat UI a question through the browser relay.

    The default mode hands the wait to a detached watcher process and polls
    its job record; ``sync=True`` does everything in this process.
    """

    def __init__(
        self,
        job_store: JobStore,
        relay: RelayClient,
        *,
        sync: bool = False,
        chat_url: str = DEFAULT_CHAT_URL,
        debug: bool = False,
        job_max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
        connect: Connector = connect_browser,
        spawn: Callable[..., int] = spawn_watcher,
    ):
        self._job_store = job_store
        self._relay = relay
        self._sync = sync
        self._chat_url = chat_url
        self._debug = debug
        self._job_max_age_seconds = job_max_age_seconds
        self._poll_timeout = poll_timeout
        self._connect = connect
        self._spawn = spawn

    @property
    def sync(self) -> bool:
        return self._sync

    async def ask(self, prompt: str) -> str:
        self._job_store.cleanup_old_jobs(self._job_max_age_seconds)
        if self._sync:
            return await self._ask_sync(prompt)

        result = await dispatch_prompt(
            prompt,
            relay=self._relay,
            job_store=self._job_store,
            chat_url=self._chat_url,
            connect=self._connect,
        )
        logger.info(f"Request dispatched (job {result.job_id}), waiting for the reply")

        pid = self._spawn(
            result.job_id,
            config_dir=str(self._job_store.jobs_dir.parent),
            debug=self._debug,
        )
        logger.info(f"Watcher spawned (pid {pid})")

        return await poll_for_completion(self._job_store, result.job_id, timeout=self._poll_timeout)

    async def _ask_sync(self, prompt: str) -> str:
        logger.info("Connecting to browser (sync mode)...")
        relay_started = await self._relay.ensure_running()
        try:
            extension_id = await self._relay.wait_for_extension()
            try:
                handle = await self._connect(self._relay.cdp_url(extension_id))
            except PlaywrightError as ex:
                raise InteractiveError(f"Interactive chat failed: {ex}") from ex

            try:
                page = handle.page
                await navigate_to_chat(page, self._chat_url)
                await submit_prompt(page, prompt)
                await wait_for_generation_start(page)

                try:
                    await page.locator(STOP_BUTTON_SELECTOR).wait_for(
                        state="hidden", timeout=SYNC_GENERATION_TIMEOUT_SECONDS * 1000
                    )
                except PlaywrightTimeoutError:
                    logger.warning("(response may still be streaming)")

                logger.info("Extracting response...")
                response = await page.evaluate(EXTRACT_RESPONSE_JS)
                logger.info(f"Response received ({len(response)} chars)")
                return response
            except PlaywrightError as ex:
                raise InteractiveError(f"Interactive chat failed: {ex}") from ex
            finally:
                await handle.disconnect()
        finally:
            if relay_started:
                self._relay.stop()
