"""
WhatsApp Web — delivery through a headless browser driving web.whatsapp.com.

Each user owns a persistent Chromium profile under their session directory,
so the WhatsApp Web login survives restarts. The driver keeps the profile's
landing page open to watch the link state; the worker opens a fresh page
per message and closes it afterwards, never the context.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from channels.base import DeliveryWorker
from channels.sessions import Session, SessionDriver, SessionManager
from models.errors import WorkerError
from models.schemas import MessageStatus, ScheduledMessage

logger = structlog.get_logger()

WHATSAPP_WEB_URL = "https://web.whatsapp.com"

# DOM hooks on WhatsApp Web
CHAT_LIST = "#pane-side"
COMPOSE_BOX = 'div[title="Type a message"]'
SEND_BUTTON = 'span[data-icon="send"]'
LINK_QR_CODE = "div[data-ref] canvas"


@dataclass
class WhatsAppWebHandle:
    context: BrowserContext
    page: Page


# ══════════════════════════════════════════════════════════════
#  DRIVER
# ══════════════════════════════════════════════════════════════

class WhatsAppWebDriver(SessionDriver):
    """Launches one persistent Chromium context per user."""

    def __init__(self, headless: bool = True, browser_args: list[str] = None):
        self.headless = headless
        self.browser_args = browser_args if browser_args is not None else [
            "--no-sandbox", "--disable-setuid-sandbox",
        ]
        self._playwright: Optional[Playwright] = None

    async def _ensure_playwright(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            logger.info("playwright_started")
        return self._playwright

    async def open(self, user_id: str, data_dir: Path) -> WhatsAppWebHandle:
        playwright = await self._ensure_playwright()
        context = await playwright.chromium.launch_persistent_context(
            str(data_dir),
            headless=self.headless,
            args=self.browser_args,
        )
        page = context.pages[0] if context.pages else await context.new_page()
        await page.goto(WHATSAPP_WEB_URL, wait_until="domcontentloaded")
        logger.info("whatsapp_web_opened", user_id=user_id, data_dir=str(data_dir))
        return WhatsAppWebHandle(context=context, page=page)

    async def wait_until_linked(self, handle: WhatsAppWebHandle) -> None:
        # timeout=0 disables Playwright's own limit
        await handle.page.wait_for_selector(CHAT_LIST, timeout=0)

    async def close(self, handle: WhatsAppWebHandle) -> None:
        await handle.context.close()

    async def shutdown(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("playwright_stopped")


# ══════════════════════════════════════════════════════════════
#  WORKER
# ══════════════════════════════════════════════════════════════

class WhatsAppWebWorker(DeliveryWorker):
    """Types and sends one message in the user's linked WhatsApp Web session."""

    name = "whatsapp_web"

    def __init__(
        self,
        sessions: SessionManager,
        chat_load_timeout_ms: int = 20000,
        typing_delay_ms: int = 50,
        confirm_wait_ms: int = 3000,
    ):
        super().__init__(sessions)
        self.chat_load_timeout_ms = chat_load_timeout_ms
        self.typing_delay_ms = typing_delay_ms
        self.confirm_wait_ms = confirm_wait_ms

    def chat_url(self, message: ScheduledMessage) -> str:
        return f"{WHATSAPP_WEB_URL}/send?phone={message.contact.digits}"

    async def _do_send(self, message: ScheduledMessage, session: Session) -> MessageStatus:
        handle: WhatsAppWebHandle = session.handle
        try:
            page = await handle.context.new_page()
        except PlaywrightError as e:
            raise WorkerError(f"Could not open a page: {e}", user_id=message.user_id) from e

        try:
            await page.goto(self.chat_url(message), wait_until="domcontentloaded")
            try:
                await page.wait_for_selector(COMPOSE_BOX, timeout=self.chat_load_timeout_ms)
            except PlaywrightTimeoutError:
                if await self._shows_link_screen(page):
                    self.sessions.mark_unlinked(session)
                    raise WorkerError(
                        f"WhatsApp Web is logged out for user {message.user_id}",
                        user_id=message.user_id, retryable=True,
                    ) from None
                logger.warning("whatsapp_chat_not_loaded", message_id=message.id,
                               phone=message.contact.digits)
                return MessageStatus.FAILED

            await page.type(COMPOSE_BOX, message.content, delay=self.typing_delay_ms)
            await page.click(SEND_BUTTON)
            # no reliable delivery receipt in the DOM; give the send time to leave
            await page.wait_for_timeout(self.confirm_wait_ms)
            logger.info("whatsapp_message_sent", message_id=message.id,
                        phone=message.contact.digits)
            return MessageStatus.SENT

        except PlaywrightError as e:
            raise WorkerError(
                f"Browser automation failed: {e}", user_id=message.user_id,
            ) from e
        finally:
            try:
                await page.close()
            except PlaywrightError as e:
                logger.warning("whatsapp_page_close_failed", message_id=message.id, error=str(e))

    async def _shows_link_screen(self, page: Page) -> bool:
        try:
            return await page.query_selector(LINK_QR_CODE) is not None
        except PlaywrightError:
            return False
