from __future__ import annotations

import asyncio
import contextlib
import socket
import subprocess
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlparse

import httpx
from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from vcopilot.errors import ExtensionNotConnectedError, InteractiveError

DEFAULT_RELAY_HOST = "127.0.0.1"
DEFAULT_RELAY_PORT = 19988
DEFAULT_RELAY_COMMAND = ["npx", "-y", "playwriter", "serve"]
DEFAULT_CHAT_URL = "https://chatgpt.com"

COMPOSER_SELECTOR = "#prompt-textarea"
STOP_BUTTON_SELECTOR = '[data-testid="stop-button"]'
LOGIN_URL_MARKERS = ("/auth/login", "auth0.openai.com", "login.microsoftonline.com")

EXTENSION_HELP = (
    "No browser extension connected to the CDP relay.\n"
    "Make sure Chrome is running with the Playwriter extension enabled and connected."
)


def is_port_in_use(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=0.5):
            return True
    except OSError:
        return False


def spawn_detached(args: Sequence[str], *, env: dict[str, str] | None = None) -> subprocess.Popen:
    """Start a process that outlives this one, with its stdio discarded."""
    kwargs: dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "env": env,
    }
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    return subprocess.Popen(list(args), **kwargs)


def build_cdp_url(host: str, port: int, extension_id: str | None = None) -> str:
    url = f"ws://{host}:{port}/cdp"
    if extension_id:
        url += f"?extensionId={quote(extension_id, safe='')}"
    return url


class RelayClient:
    """The local CDP relay that bridges Playwright to the browser extension."""

    def __init__(
        self,
        host: str = DEFAULT_RELAY_HOST,
        port: int = DEFAULT_RELAY_PORT,
        *,
        command: Sequence[str] | None = None,
        client: httpx.AsyncClient | None = None,
        start_timeout: float = 15.0,
        extension_timeout: float = 30.0,
        extension_poll_interval: float = 2.0,
    ):
        self.host = host
        self.port = port
        self._command = list(command) if command else list(DEFAULT_RELAY_COMMAND)
        self._client = client
        self._start_timeout = start_timeout
        self._extension_timeout = extension_timeout
        self._extension_poll_interval = extension_poll_interval
        self._process: subprocess.Popen | None = None

    def cdp_url(self, extension_id: str | None = None) -> str:
        return build_cdp_url(self.host, self.port, extension_id)

    async def ensure_running(self) -> bool:
        """Start the relay unless one is already listening. True if this call started it."""
        if is_port_in_use(self.host, self.port):
            logger.info(f"CDP relay already running on :{self.port}")
            return False

        logger.info("Starting CDP relay server...")
        try:
            self._process = spawn_detached(self._command)
        except OSError as ex:
            raise InteractiveError(f"Relay start failed: {' '.join(self._command)}: {ex}") from ex

        deadline = time.monotonic() + self._start_timeout
        while not is_port_in_use(self.host, self.port):
            code = self._process.poll()
            if code is not None:
                raise InteractiveError(f"Relay start failed: relay command exited with code {code}")
            if time.monotonic() >= deadline:
                raise InteractiveError(
                    f"Relay start failed: nothing listening on {self.host}:{self.port} "
                    f"after {self._start_timeout:.0f}s"
                )
            await asyncio.sleep(0.25)

        logger.info("CDP relay server started")
        return True

    async def wait_for_extension(self) -> str:
        """Return the id of the first connected extension."""
        deadline = time.monotonic() + self._extension_timeout
        while True:
            extensions = await self._extension_status()
            if extensions:
                extension_id = str(extensions[0].get("extensionId", ""))
                logger.info(f"Extension connected: {extension_id}")
                return extension_id
            if time.monotonic() >= deadline:
                raise ExtensionNotConnectedError(EXTENSION_HELP)
            logger.info("Waiting for browser extension to connect...")
            await asyncio.sleep(self._extension_poll_interval)

    def stop(self) -> None:
        """Stop a relay this client started. A shared relay is left alone."""
        if self._process is None or self._process.poll() is not None:
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
        logger.debug("CDP relay server stopped")
        self._process = None

    async def _extension_status(self) -> list[dict]:
        url = f"http://{self.host}:{self.port}/extensions/status"
        try:
            if self._client is not None:
                resp = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    resp = await client.get(url)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as ex:
            logger.debug(f"Extension status check failed: {ex}")
            return []
        extensions = data.get("extensions") if isinstance(data, dict) else None
        return [e for e in extensions or [] if isinstance(e, dict)]


@dataclass
class BrowserHandle:
    playwright: Any
    browser: Any
    context: Any
    page: Any | None

    async def disconnect(self) -> None:
        # Only drops this process's CDP connection; the browser keeps running.
        with contextlib.suppress(PlaywrightError):
            await self.browser.close()
        with contextlib.suppress(PlaywrightError):
            await self.playwright.stop()


async def connect_browser(cdp_url: str, *, open_page: bool = True) -> BrowserHandle:
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.connect_over_cdp(cdp_url)
    except PlaywrightError:
        await playwright.stop()
        raise

    if not browser.contexts:
        await browser.close()
        await playwright.stop()
        raise InteractiveError("No browser context found after connecting")

    context = browser.contexts[0]
    page = None
    if open_page:
        page = context.pages[0] if context.pages else await context.new_page()
    return BrowserHandle(playwright=playwright, browser=browser, context=context, page=page)


def needs_login(url: str) -> bool:
    return any(marker in url for marker in LOGIN_URL_MARKERS)


async def navigate_to_chat(page, chat_url: str = DEFAULT_CHAT_URL, *, login_timeout: float = 120.0) -> None:
    logger.info(f"Navigating to {chat_url}...")
    await page.goto(chat_url, wait_until="domcontentloaded")
    await page.wait_for_timeout(3000)
    logger.debug(f"Landed on: {page.url}")

    if needs_login(page.url):
        logger.info("Not logged in, please sign in manually in the browser")
        await page.wait_for_url(f"{chat_url.rstrip('/')}/**", timeout=login_timeout * 1000)
        await page.wait_for_timeout(3000)
        logger.info("Login detected")

    try:
        await page.wait_for_selector(COMPOSER_SELECTOR, timeout=30_000)
        logger.debug("Chat composer ready")
    except PlaywrightTimeoutError:
        logger.warning("Chat composer not found after 30s, assuming it is ready")


async def submit_prompt(page, prompt: str) -> None:
    logger.info(f"Sending message ({len(prompt)} chars)...")
    composer = page.locator(COMPOSER_SELECTOR)
    await composer.click()
    await composer.fill(prompt)
    await page.wait_for_timeout(500)
    await page.keyboard.press("Enter")


async def wait_for_generation_start(page, timeout: float = 15.0) -> bool:
    try:
        await page.locator(STOP_BUTTON_SELECTOR).wait_for(state="visible", timeout=timeout * 1000)
    except PlaywrightTimeoutError:
        logger.info("(response may have been instant)")
        return False
    return True


def find_chat_page(pages: list, preferred_url: str, chat_url: str = DEFAULT_CHAT_URL):
    """Pick the tab holding the conversation: exact URL, then same path, then any chat tab."""
    for page in pages:
        if page.url == preferred_url:
            return page

    path = urlparse(preferred_url).path
    if path and path != "/":
        for page in pages:
            if urlparse(page.url).path == path:
                return page

    for page in pages:
        if page.url.startswith(chat_url):
            logger.warning(f"No tab matches {preferred_url}, falling back to {page.url}")
            return page
    return None

