"""
Browser-driven session client.

Runs Chromium through Playwright with a persistent profile so the login
survives restarts. The web client's page is polled for the QR code, the chat
list (logged in) and unread chats; everything found is pushed out as
SessionEvents. DOM selectors are kept together at the top since the web
client changes them from time to time.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from wabridge.client.base import SessionClient, SessionEventType
from wabridge.errors import FatalStartFailure, SessionNotReady, TransientStartFailure
from wabridge.logger import get_logger
from wabridge.supervisor.retry import is_transient

logger = get_logger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

QR_SELECTOR = "div[data-ref]"
CHAT_LIST_SELECTOR = "#pane-side"
COMPOSE_SELECTOR = "footer div[contenteditable='true']"
CHAT_HEADER = "#main header"

SCRAPE_CHATS_JS = """
() => Array.from(document.querySelectorAll('#pane-side [role="listitem"]')).map(item => {
    const title = item.querySelector('span[title]');
    const badge = item.querySelector('span[aria-label*="unread"]');
    const spans = item.querySelectorAll('span[title]');
    const preview = spans.length > 1 ? spans[spans.length - 1].getAttribute('title') : '';
    return {
        name: title ? title.getAttribute('title') : '',
        unread: badge ? parseInt(badge.textContent, 10) || 1 : 0,
        last_message: preview || '',
    };
})
"""

MISSING_BROWSER_MARKERS = ("executable doesn't exist", "looks like playwright was just installed")


def classify_browser_error(error: BaseException) -> Exception:
    """Map a Playwright error onto the start-failure taxonomy."""
    message = str(error)
    if any(marker in message.lower() for marker in MISSING_BROWSER_MARKERS):
        return FatalStartFailure(f"Browser executable unavailable: {message}")
    if isinstance(error, PlaywrightTimeoutError) or is_transient(error):
        return TransientStartFailure(message)
    return FatalStartFailure(message)


class BrowserSessionClient(SessionClient):
    """Messaging session backed by a persistent Chromium profile."""

    def __init__(
        self,
        profile_dir: Path,
        url: str = "https://web.whatsapp.com",
        headless: bool = True,
        executable_path: Optional[str] = None,
        qr_max_retries: int = 0,
        load_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ):
        super().__init__()
        self.profile_dir = Path(profile_dir)
        self.url = url.rstrip("/")
        self.headless = headless
        self.executable_path = executable_path
        self.qr_max_retries = qr_max_retries
        self.load_timeout = load_timeout
        self.poll_interval = poll_interval

        self._playwright = None
        self._context = None
        self._page = None
        self._watch_task: Optional[asyncio.Task] = None
        self._page_lock = asyncio.Lock()
        self._closing = False
        self._ready = False
        self._last_qr: Optional[str] = None
        self._qr_count = 0
        self._unread: dict[str, int] = {}

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        if self._context is not None:
            await self.destroy()

        self._closing = False
        self._ready = False
        self._last_qr = None
        self._qr_count = 0
        self._unread = {}
        self.profile_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Launching browser session with profile {self.profile_dir}")
        try:
            self._playwright = await async_playwright().start()
            self._context = await self._playwright.chromium.launch_persistent_context(
                str(self.profile_dir),
                headless=self.headless,
                args=LAUNCH_ARGS,
                executable_path=self.executable_path,
                user_agent=USER_AGENT,
            )
            self._context.on("close", self._on_context_close)

            page = self._context.pages[0] if self._context.pages else await self._context.new_page()
            page.on("crash", self._on_page_crash)
            self._page = page

            await page.goto(self.url, wait_until="domcontentloaded", timeout=self.load_timeout * 1000)
            await page.wait_for_selector(
                f"{QR_SELECTOR}, {CHAT_LIST_SELECTOR}",
                timeout=self.load_timeout * 1000,
            )
        except PlaywrightError as e:
            self._closing = True
            await self._close_browser()
            raise classify_browser_error(e) from e

        self._watch_task = asyncio.create_task(self._watch(), name="session-watch")
        logger.info("Browser session loaded, waiting for login state")

    async def destroy(self) -> None:
        self._closing = True
        self._ready = False

        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
        self._watch_task = None

        await self._close_browser()
        logger.info("Browser session destroyed")

    async def _close_browser(self) -> None:
        context, playwright = self._context, self._playwright
        self._context = self._page = self._playwright = None

        if context is not None:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser context: {e}")
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")

    # -- Events -------------------------------------------------------------

    async def _on_context_close(self, _context=None) -> None:
        if self._closing:
            return
        self._ready = False
        await self.emit(SessionEventType.DISCONNECTED, "browser closed")

    async def _on_page_crash(self, _page=None) -> None:
        if self._closing:
            return
        self._ready = False
        await self.emit(SessionEventType.DISCONNECTED, "page crashed")

    async def _watch(self) -> None:
        """Poll the page for login state, QR codes and unread chats."""
        while not self._closing:
            try:
                async with self._page_lock:
                    stop = await self._poll_once()
                if stop:
                    return
            except asyncio.CancelledError:
                raise
            except PlaywrightError as e:
                if self._closing:
                    return
                logger.error(f"Session page unavailable: {e}")
                self._ready = False
                await self.emit(SessionEventType.DISCONNECTED, f"page error: {e}")
                return
            except Exception as e:
                logger.error(f"Session watch error: {e}")

            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> bool:
        """One poll of the page. Returns True when watching should stop."""
        page = self._page
        if page is None:
            return True

        if await page.query_selector(CHAT_LIST_SELECTOR):
            if not self._ready:
                self._ready = True
                await self.emit(SessionEventType.AUTHENTICATED)
                await self.emit(SessionEventType.READY)
            await self._scan_unread(page)
            return False

        qr_element = await page.query_selector(QR_SELECTOR)
        if qr_element is None:
            return False

        if self._ready:
            # Logged out from the phone
            self._ready = False
            await self.emit(SessionEventType.DISCONNECTED, "LOGOUT")
            return True

        qr = await qr_element.get_attribute("data-ref")
        if qr and qr != self._last_qr:
            self._last_qr = qr
            self._qr_count += 1
            if self.qr_max_retries and self._qr_count > self.qr_max_retries:
                await self.emit(
                    SessionEventType.AUTH_FAILURE, "Max qrcode retries reached"
                )
                return True
            await self.emit(SessionEventType.QR, qr)
        return False

    async def _scan_unread(self, page) -> None:
        chats = await page.evaluate(SCRAPE_CHATS_JS)
        for chat in chats:
            name, unread = chat.get("name"), chat.get("unread", 0)
            if not name:
                continue
            previous = self._unread.get(name, 0)
            self._unread[name] = unread
            if unread > previous:
                await self.emit(
                    SessionEventType.MESSAGE,
                    {
                        "chat": name,
                        "body": chat.get("last_message", ""),
                        "unread": unread,
                        "timestamp": time.time(),
                    },
                )

    # -- Operations ---------------------------------------------------------

    def _require_ready(self):
        if not self._ready or self._page is None:
            raise SessionNotReady("Session is not ready")
        return self._page

    async def send_message(self, chat_id: str, content: str) -> dict[str, Any]:
        if not chat_id.endswith("@c.us"):
            raise ValueError(f"Unsupported chat id for sending: {chat_id}")
        phone = chat_id.split("@", 1)[0]

        async with self._page_lock:
            page = self._require_ready()
            await page.goto(
                f"{self.url}/send?phone={phone}&text={quote(content)}",
                wait_until="domcontentloaded",
            )
            compose = await page.wait_for_selector(
                COMPOSE_SELECTOR, timeout=self.load_timeout * 1000
            )
            await compose.press("Enter")

        return {"to": chat_id, "body": content, "timestamp": time.time()}

    async def get_chats(self) -> list[dict[str, Any]]:
        async with self._page_lock:
            page = self._require_ready()
            return await page.evaluate(SCRAPE_CHATS_JS)

    async def get_group_participants(self, group_id: str) -> list[dict[str, Any]]:
        async with self._page_lock:
            page = self._require_ready()
            escaped = group_id.replace("\\", "\\\\").replace('"', '\\"')
            item = await page.query_selector(
                f'#pane-side [role="listitem"] span[title="{escaped}"]'
            )
            if item is None:
                raise LookupError(f"Group not found: {group_id}")
            await item.click()
            header = await page.wait_for_selector(
                CHAT_HEADER, timeout=self.load_timeout * 1000
            )
            # Title first, participant list (comma separated) last
            spans = await header.query_selector_all("span[title]")
            names = await spans[-1].get_attribute("title") if len(spans) > 1 else ""
            names = names or ""

        return [{"name": name.strip()} for name in names.split(",") if name.strip()]
