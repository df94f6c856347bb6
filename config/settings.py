"""
Configuration loader for the scheduled sender.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class SchedulerConfig:
    poll_interval_seconds: float = 10.0     # fixed tick cadence
    max_concurrent_deliveries: int = 5      # users served at once, and queue depth per user
    delivery_timeout_seconds: float = 120.0 # per attempt, 0 disables
    eager_dispatch: bool = False            # wake the loop when a due message is scheduled


@dataclass
class SessionConfig:
    base_dir: str = "./sessions"            # one sub-directory per user
    linking_timeout_seconds: float = 60.0
    headless: bool = True
    browser_args: list[str] = field(
        default_factory=lambda: ["--no-sandbox", "--disable-setuid-sandbox"]
    )


@dataclass
class DeliveryConfig:
    driver: str = "simulated"               # "simulated" | "whatsapp_web"
    chat_load_timeout_ms: int = 20000
    typing_delay_ms: int = 50
    confirm_wait_ms: int = 3000
    simulated_latency_seconds: float = 0.0


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"           # "memory" | "file"
    store_file_dir: str = "./data"          # directory for file backend


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "ScheduledSender"
    debug: bool = False
    admin_token: str = "change-me"
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    # "${EAGER}" substitutes to a string, so YAML typing is lost
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SCHEDULER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        settings.admin_token = raw.get("admin_token", settings.admin_token)

        if "scheduler" in raw:
            sc = raw["scheduler"] or {}
            defaults = SchedulerConfig()
            settings.scheduler = SchedulerConfig(
                poll_interval_seconds=float(sc.get("poll_interval_seconds", defaults.poll_interval_seconds)),
                max_concurrent_deliveries=int(sc.get("max_concurrent_deliveries", defaults.max_concurrent_deliveries)),
                delivery_timeout_seconds=float(sc.get("delivery_timeout_seconds", defaults.delivery_timeout_seconds)),
                eager_dispatch=_as_bool(sc.get("eager_dispatch", defaults.eager_dispatch)),
            )

        if "sessions" in raw:
            se = raw["sessions"] or {}
            defaults = SessionConfig()
            settings.sessions = SessionConfig(
                base_dir=se.get("base_dir", defaults.base_dir),
                linking_timeout_seconds=float(se.get("linking_timeout_seconds", defaults.linking_timeout_seconds)),
                headless=_as_bool(se.get("headless", defaults.headless)),
                browser_args=list(se.get("browser_args", defaults.browser_args)),
            )

        if "delivery" in raw:
            de = raw["delivery"] or {}
            defaults = DeliveryConfig()
            settings.delivery = DeliveryConfig(
                driver=de.get("driver", defaults.driver),
                chat_load_timeout_ms=int(de.get("chat_load_timeout_ms", defaults.chat_load_timeout_ms)),
                typing_delay_ms=int(de.get("typing_delay_ms", defaults.typing_delay_ms)),
                confirm_wait_ms=int(de.get("confirm_wait_ms", defaults.confirm_wait_ms)),
                simulated_latency_seconds=float(
                    de.get("simulated_latency_seconds", defaults.simulated_latency_seconds)
                ),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=str(lg.get("level", settings.logging.level)).upper(),
                json=_as_bool(lg.get("json", settings.logging.json)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
