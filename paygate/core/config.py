import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Ledger (TON)
    LEDGER_BACKEND: str = "toncenter"  # toncenter | memory
    LEDGER_NETWORK: str = "testnet"  # mainnet | testnet
    LEDGER_API_URL: Optional[str] = None  # defaults per network
    LEDGER_API_KEY: Optional[str] = None
    LEDGER_TIMEOUT_SECONDS: float = 10.0
    LEDGER_MAX_RETRIES: int = 3
    FACTORY_CONTRACT_ADDRESS: Optional[str] = None

    # Access gate (Telegram Bot API)
    GATE_BOT_TOKEN: Optional[str] = None
    GATE_API_URL: str = "https://api.telegram.org"
    GATE_TIMEOUT_SECONDS: float = 10.0
    GATE_MAX_RETRIES: int = 2
    GATE_WEBHOOK_SECRET: Optional[str] = None  # X-Telegram-Bot-Api-Secret-Token

    # Payment reconciliation
    PAYMENT_CHECK_INTERVAL_SECONDS: int = 30
    PAYMENT_LOOKBACK_HOURS: int = 24
    PAYMENT_BATCH_LIMIT: int = 100
    PAYMENT_TX_SCAN_LIMIT: int = 100
    PAYMENT_MARKER: str = "Subscribe"
    DEFAULT_TOLERANCE_BPS: int = 100
    RECONCILER_ALERT_AFTER_SECONDS: int = 300
    PENDING_RETENTION_DAYS: int = 7
    RECONCILER_IN_PROCESS: bool = False  # run the timer inside the API process

    # Access coordination
    ACCESS_REQUEST_TTL_HOURS: int = 48
    GATE_HEALTH_INTERVAL_SECONDS: int = 300

    # Admin access
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("paygate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "GATE_BOT_TOKEN",
        "ADMIN_KEY",
    ]
    if getattr(cfg, "LEDGER_BACKEND", "toncenter") == "toncenter":
        required_keys.append("FACTORY_CONTRACT_ADDRESS")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
