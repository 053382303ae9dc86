"""
Runtime configuration for wabridge.

Settings are read from the environment (optionally seeded from a ``.env``
file). ``CONFIG`` is the process-wide instance; call ``CONFIG.reload()`` after
changing the environment.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from wabridge.logger import get_logger

logger = get_logger(__name__)

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent

# Bundled dashboard, served when STATIC_DIR is unset
BUNDLED_STATIC_DIR = Path(__file__).resolve().parent / "static"

FALSE_VALUES = ("0", "false", "no", "off")


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {key}={raw!r}, using {default}")
        return default


def _env_float(key: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {key}={raw!r}, using {default}")
        return default


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in FALSE_VALUES


@dataclass
class Settings:
    """All environment-driven settings."""

    session_name: str = "client-one"
    data_path: Path = field(default_factory=lambda: Path("./data").resolve())

    # Start-up retry policy
    start_retry_tries: int = 3
    start_retry_delay_ms: int = 1000

    # Sanitizer: SAFE_LOCK_CLEANUP=0/false disables the process sweep
    safe_lock_cleanup: bool = True

    # Shutdown
    teardown_step_timeout: Optional[float] = None
    exit_on_degraded: bool = True

    # HTTP
    host: str = "0.0.0.0"
    port: int = 8080
    api_token: Optional[str] = None
    rate_limit_max: int = 100
    rate_limit_window: int = 15 * 60
    static_dir: Optional[Path] = None

    # Webhook relay
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0

    # Browser client
    headless: bool = True
    browser_executable: Optional[str] = None
    web_client_url: str = "https://web.whatsapp.com"
    qr_max_retries: int = 0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        static_dir = _env_str("STATIC_DIR")
        return cls(
            session_name=_env_str("SESSION_NAME", "client-one"),
            data_path=Path(_env_str("DATA_PATH", "./data")).expanduser().resolve(),
            start_retry_tries=max(1, _env_int("START_RETRY_TRIES", 3)),
            start_retry_delay_ms=max(0, _env_int("START_RETRY_DELAY_MS", 1000)),
            safe_lock_cleanup=_env_bool("SAFE_LOCK_CLEANUP", True),
            teardown_step_timeout=_env_float("TEARDOWN_STEP_TIMEOUT", None),
            exit_on_degraded=_env_bool("EXIT_ON_DEGRADED", True),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            api_token=_env_str("API_TOKEN"),
            rate_limit_max=_env_int("RATE_LIMIT_MAX", 100),
            rate_limit_window=_env_int("RATE_LIMIT_WINDOW", 15 * 60),
            static_dir=Path(static_dir).resolve() if static_dir else BUNDLED_STATIC_DIR,
            webhook_url=_env_str("WEBHOOK_URL"),
            webhook_timeout=_env_float("WEBHOOK_TIMEOUT", 10.0),
            headless=_env_bool("HEADLESS", True),
            browser_executable=_env_str("BROWSER_EXECUTABLE"),
            web_client_url=_env_str("WEB_CLIENT_URL", "https://web.whatsapp.com"),
            qr_max_retries=max(0, _env_int("QR_MAX_RETRIES", 0)),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_file=_env_str("LOG_FILE"),
        )

    def reload(self) -> None:
        """Re-read the environment into this instance."""
        fresh = Settings.from_env()
        for f in fields(self):
            setattr(self, f.name, getattr(fresh, f.name))


load_dotenv(PROJECT_DIR / ".env")

CONFIG = Settings.from_env()
