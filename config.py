"""Configuration management for the checkout and wallet ledger core"""

import os
import logging
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_window_overrides(raw: str) -> Dict[str, int]:
    """Parse ``CODE:minutes,CODE:minutes`` into an upper-cased lookup table."""
    overrides: Dict[str, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        code, sep, minutes = chunk.partition(":")
        if not sep:
            logger.warning(f"⚠️ CONFIG: Ignoring malformed payment window override '{chunk}'")
            continue
        try:
            value = int(minutes.strip())
        except ValueError:
            logger.warning(f"⚠️ CONFIG: Ignoring non-numeric payment window override '{chunk}'")
            continue
        if value <= 0:
            logger.warning(f"⚠️ CONFIG: Ignoring non-positive payment window override '{chunk}'")
            continue
        overrides[code.strip().upper()] = value
    return overrides


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./checkout_ledger.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Payment window
    DEFAULT_PAYMENT_WINDOW_MINUTES = int(os.getenv("DEFAULT_PAYMENT_WINDOW_MINUTES", "30"))
    PAYMENT_WINDOW_OVERRIDES = _parse_window_overrides(os.getenv("PAYMENT_WINDOW_OVERRIDES", ""))
    MIN_TRANSACTION_REFERENCE_LENGTH = int(os.getenv("MIN_TRANSACTION_REFERENCE_LENGTH", "10"))

    # Identifiers
    GUEST_ID_PREFIX = os.getenv("GUEST_ID_PREFIX", "guest_")
    ORDER_ID_PREFIX = os.getenv("ORDER_ID_PREFIX", "ORD")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()

    # Background expiry sweep
    ORDER_EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("ORDER_EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))
    ORDER_EXPIRY_BATCH_SIZE = int(os.getenv("ORDER_EXPIRY_BATCH_SIZE", "50"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_DIR = os.getenv("LOG_DIR", "logs")

    @staticmethod
    def get_payment_window_minutes(method_code: Optional[str] = None) -> int:
        """Payment window for a payment method code, falling back to the default"""
        if method_code:
            override = Config.PAYMENT_WINDOW_OVERRIDES.get(method_code.strip().upper())
            if override:
                return override
        return Config.DEFAULT_PAYMENT_WINDOW_MINUTES

    @staticmethod
    def get_payment_window_seconds(method_code: Optional[str] = None) -> int:
        return Config.get_payment_window_minutes(method_code) * 60

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Checkout Ledger Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Default Payment Window: {Config.DEFAULT_PAYMENT_WINDOW_MINUTES} minutes")
        if Config.PAYMENT_WINDOW_OVERRIDES:
            overrides = ", ".join(
                f"{code}={minutes}m" for code, minutes in sorted(Config.PAYMENT_WINDOW_OVERRIDES.items())
            )
            logger.info(f"   Payment Window Overrides: {overrides}")
        logger.info(
            f"   Expiry Sweep: every {Config.ORDER_EXPIRY_SWEEP_INTERVAL_SECONDS}s, "
            f"batch {Config.ORDER_EXPIRY_BATCH_SIZE}"
        )
