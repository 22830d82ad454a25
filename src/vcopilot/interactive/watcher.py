"""Detached process that waits for a dispatched prompt's reply.

Usage: ``python -m vcopilot.interactive.watcher <job_id> [--config-dir DIR] [--debug]``
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from vcopilot.errors import InteractiveError, JobTimeoutError, JobVanishedError, PageNotFoundError
from vcopilot.interactive.browser import (
    DEFAULT_CHAT_URL,
    STOP_BUTTON_SELECTOR,
    build_cdp_url,
    connect_browser,
    find_chat_page,
)
from vcopilot.interactive.extract import EXTRACT_RESPONSE_JS
from vcopilot.interactive.jobs import (
    JOB_COMPLETED,
    JOB_DISPATCHED,
    JOB_ERROR,
    JOB_WATCHING,
    JobStore,
    utc_now,
)

HEARTBEAT_INTERVAL_SECONDS = 5.0
GENERATION_TIMEOUT_SECONDS = 300.0
PAGE_RETRY_DELAY_SECONDS = 2.0


async def _heartbeat(job_store: JobStore, job_id: str, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        job_store.update(job_id, last_heartbeat=utc_now())


async def _wait_for_reply(page, generation_timeout: float) -> str:
    stop_button = page.locator(STOP_BUTTON_SELECTOR)
    try:
        generating = await stop_button.is_visible()
    except PlaywrightError:
        generating = False

    if generating:
        logger.info("Still generating, waiting...")
        try:
            await stop_button.wait_for(state="hidden", timeout=generation_timeout * 1000)
        except PlaywrightTimeoutError as ex:
            raise JobTimeoutError(
                f"Reply still generating after {generation_timeout:.0f}s"
            ) from ex
        await page.wait_for_timeout(1000)
    else:
        logger.info("Reply already finished")
        await page.wait_for_timeout(500)

    logger.info("Extracting response...")
    return await page.evaluate(EXTRACT_RESPONSE_JS)


async def watch_job(
    job_id: str,
    job_store: JobStore,
    *,
    chat_url: str = DEFAULT_CHAT_URL,
    connect=None,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    generation_timeout: float = GENERATION_TIMEOUT_SECONDS,
    page_retry_delay: float = PAGE_RETRY_DELAY_SECONDS,
) -> str:
    connect = connect or (lambda url: connect_browser(url, open_page=False))

    job = job_store.read(job_id)
    if job is None:
        raise JobVanishedError(f"Job {job_id} not found")
    if job.status != JOB_DISPATCHED:
        raise InteractiveError(f"Job {job_id} has unexpected status: {job.status}")

    job_store.update(job_id, status=JOB_WATCHING, watcher_pid=os.getpid(), last_heartbeat=utc_now())
    heartbeat = asyncio.create_task(_heartbeat(job_store, job_id, heartbeat_interval))
    handle = None

    try:
        logger.info("Reconnecting to browser...")
        handle = await connect(build_cdp_url(job.cdp_host, job.cdp_port, job.extension_id or None))

        page = find_chat_page(handle.context.pages, job.page_url, chat_url)
        if page is None:
            # Tabs may still be attaching to the new connection.
            await asyncio.sleep(page_retry_delay)
            page = find_chat_page(handle.context.pages, job.page_url, chat_url)
        if page is None:
            found = ", ".join(p.url for p in handle.context.pages) or "(none)"
            raise PageNotFoundError(
                f"Chat page not found after reconnecting. Expected URL: {job.page_url}. Available pages: {found}"
            )

        logger.info(f"Found page: {page.url}")
        response = await _wait_for_reply(page, generation_timeout)

        job_store.update(
            job_id,
            status=JOB_COMPLETED,
            response=response,
            response_length=len(response),
            completed_at=utc_now(),
        )
        logger.info(f"Response extracted ({len(response)} chars)")
        return response
    except Exception as ex:
        job_store.update(job_id, status=JOB_ERROR, error=str(ex) or type(ex).__name__, completed_at=utc_now())
        raise
    finally:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass
        except Exception as ex:
            logger.warning(f"Heartbeat for job {job_id} stopped early: {ex}")
        if handle is not None:
            await handle.disconnect()


def main(argv: list[str] | None = None) -> int:
    from vcopilot.app_config import load_json_config, parse_app_config
    from vcopilot.logging_config import setup_logging

    parser = argparse.ArgumentParser(prog="vcopilot-watcher")
    parser.add_argument("job_id")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--config-dir", help="must match the dispatcher's, or the job file is not found")
    args = parser.parse_args(argv)

    load_dotenv()
    config = load_json_config()
    if args.config_dir:
        config["ConfigDir"] = args.config_dir
    app = parse_app_config(config)
    config_dir = Path(app.config_dir)

    # stdio is discarded when detached, so the log file is the only trace.
    setup_logging(
        level="DEBUG" if args.debug else "INFO",
        consumers=[{"type": "file", "path": str(config_dir / "logs" / "watcher.log")}],
    )

    try:
        asyncio.run(watch_job(args.job_id, JobStore(config_dir / "jobs"), chat_url=app.chat_url))
    except Exception as ex:
        logger.error(f"Watcher failed for job {args.job_id}: {ex}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
