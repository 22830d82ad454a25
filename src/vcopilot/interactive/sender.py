from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger
from playwright.async_api import Error as PlaywrightError

from vcopilot.errors import InteractiveError
from vcopilot.interactive.browser import (
    DEFAULT_CHAT_URL,
    BrowserHandle,
    RelayClient,
    connect_browser,
    navigate_to_chat,
    submit_prompt,
    wait_for_generation_start,
)
from vcopilot.interactive.jobs import JOB_DISPATCHED, InteractiveJob, JobStore, utc_now

Connector = Callable[[str], Awaitable[BrowserHandle]]


@dataclass(frozen=True)
class DispatchResult:
    job_id: str
    page_url: str
    extension_id: str
    relay_started: bool


async def dispatch_prompt(
    prompt: str,
    *,
    relay: RelayClient,
    job_store: JobStore,
    chat_url: str = DEFAULT_CHAT_URL,
    connect: Connector = connect_browser,
) -> DispatchResult:
    """Send the prompt through the browser and leave a job record for the watcher.

    Returns once the chat UI has accepted the prompt; the reply is collected
    by a separate watcher process reading the job record.
    """
    relay_started = await relay.ensure_running()
    extension_id = await relay.wait_for_extension()

    logger.info("Connecting to browser...")
    try:
        handle = await connect(relay.cdp_url(extension_id))
    except PlaywrightError as ex:
        raise InteractiveError(f"Interactive dispatch failed: {ex}") from ex

    try:
        page = handle.page
        await navigate_to_chat(page, chat_url)
        await submit_prompt(page, prompt)

        logger.info("Waiting for the reply to start...")
        await wait_for_generation_start(page)

        # May now carry the conversation id, e.g. /c/abc123
        page_url = page.url
        job = InteractiveJob(
            id=job_store.generate_id(),
            created_at=utc_now(),
            prompt=prompt,
            prompt_length=len(prompt),
            cdp_host=relay.host,
            cdp_port=relay.port,
            extension_id=extension_id,
            page_url=page_url,
            status=JOB_DISPATCHED,
        )
        job_store.write(job)
        logger.debug(f"Job {job.id} written to {job_store.path_for(job.id)}")
    except PlaywrightError as ex:
        raise InteractiveError(f"Interactive dispatch failed: {ex}") from ex
    finally:
        await handle.disconnect()

    return DispatchResult(
        job_id=job.id,
        page_url=page_url,
        extension_id=extension_id,
        relay_started=relay_started,
    )
