"""
Delivery Factory — builds driver, session manager and worker from config.

Configuration in settings.yaml:
    delivery:
      #   "simulated"     — logs sends, links instantly (development, demos)
      #   "whatsapp_web"  — Playwright-driven WhatsApp Web
      driver: "simulated"

Usage:
    from channels.factory import create_delivery_stack
    sessions, worker = create_delivery_stack(settings)
"""
from __future__ import annotations

import structlog

from channels.base import DeliveryWorker
from channels.sessions import SessionManager
from config.settings import Settings

logger = structlog.get_logger()

DRIVERS = ("simulated", "whatsapp_web")


def create_delivery_stack(settings: Settings) -> tuple[SessionManager, DeliveryWorker]:
    driver_name = settings.delivery.driver

    if driver_name == "whatsapp_web":
        from channels.whatsapp_web import WhatsAppWebDriver, WhatsAppWebWorker
        driver = WhatsAppWebDriver(
            headless=settings.sessions.headless,
            browser_args=settings.sessions.browser_args,
        )
        sessions = _session_manager(driver, settings)
        worker = WhatsAppWebWorker(
            sessions,
            chat_load_timeout_ms=settings.delivery.chat_load_timeout_ms,
            typing_delay_ms=settings.delivery.typing_delay_ms,
            confirm_wait_ms=settings.delivery.confirm_wait_ms,
        )

    elif driver_name == "simulated":
        from channels.simulated import SimulatedDriver, SimulatedWorker
        sessions = _session_manager(SimulatedDriver(), settings)
        worker = SimulatedWorker(sessions, latency_s=settings.delivery.simulated_latency_seconds)

    else:
        raise ValueError(f"Unknown delivery driver '{driver_name}', expected one of {DRIVERS}")

    logger.info("delivery_stack_created", driver=driver_name,
                sessions_dir=settings.sessions.base_dir)
    return sessions, worker


def _session_manager(driver, settings: Settings) -> SessionManager:
    return SessionManager(
        driver,
        base_dir=settings.sessions.base_dir,
        linking_timeout_s=settings.sessions.linking_timeout_seconds,
    )
