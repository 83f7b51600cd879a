"""Configuration management for the lending ledger service"""

import os
import logging

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    """Read a boolean flag from the environment ("true"/"1"/"yes" are truthy)"""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip() or "development"
    IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./lending_ledger.db")

    # Payment gateways
    PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "paystack").lower().strip()

    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")

    FLUTTERWAVE_SECRET_KEY = os.getenv("FLUTTERWAVE_SECRET_KEY")
    FLUTTERWAVE_WEBHOOK_SECRET = os.getenv("FLUTTERWAVE_WEBHOOK_SECRET") or FLUTTERWAVE_SECRET_KEY
    FLUTTERWAVE_BASE_URL = os.getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3")

    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

    # SECURITY: when a provider secret is missing, webhooks are accepted unsigned
    # unless this is turned off. Production defaults to fail-closed.
    WEBHOOK_FAIL_OPEN_WITHOUT_SECRET = _env_flag(
        "WEBHOOK_FAIL_OPEN_WITHOUT_SECRET", default=not IS_PRODUCTION
    )

    # Disbursement behaviour
    SIMULATE_TRANSFERS = _env_flag("SIMULATE_TRANSFERS", default=False)
    OPTIMISTIC_DISBURSEMENT = _env_flag("OPTIMISTIC_DISBURSEMENT", default=False)

    # Admin routes
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    APP_URL = os.getenv("APP_URL", "http://localhost:8000").rstrip("/")

    CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))

    @staticmethod
    def webhook_secret_for(provider: str):
        """Return the webhook signing secret configured for a provider name"""
        provider = (provider or "").lower()
        if provider == "paystack":
            return Config.PAYSTACK_SECRET_KEY
        if provider == "flutterwave":
            return Config.FLUTTERWAVE_WEBHOOK_SECRET
        return None

    @staticmethod
    def log_configuration():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Lending Ledger Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Payment provider: {Config.PAYMENT_PROVIDER}")
        logger.info(f"   Simulate transfers: {Config.SIMULATE_TRANSFERS}")
        logger.info(f"   Optimistic disbursement: {Config.OPTIMISTIC_DISBURSEMENT}")

        for provider in ("paystack", "flutterwave"):
            if Config.webhook_secret_for(provider):
                logger.info(f"   {provider.upper()} webhook secret: ✅ Configured")
            elif Config.WEBHOOK_FAIL_OPEN_WITHOUT_SECRET:
                if Config.IS_PRODUCTION:
                    logger.critical(
                        f"🚨 PRODUCTION_SECURITY_RISK: {provider.upper()} webhook secret not configured "
                        f"and WEBHOOK_FAIL_OPEN_WITHOUT_SECRET is enabled - unsigned webhooks will be accepted!"
                    )
                else:
                    logger.warning(
                        f"⚠️ {provider.upper()} webhook secret not configured - unsigned webhooks accepted (development)"
                    )
            else:
                logger.warning(
                    f"🔒 {provider.upper()} webhook secret not configured - all {provider} webhooks will be rejected"
                )

        if Config.SIMULATE_TRANSFERS and Config.IS_PRODUCTION:
            logger.critical("🚨 SIMULATE_TRANSFERS is set in production - it will be ignored")

        if not Config.ADMIN_API_TOKEN:
            logger.warning("⚠️ ADMIN_API_TOKEN not configured - admin loan routes will reject every request")
