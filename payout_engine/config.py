import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from dotenv import load_dotenv
import pytz

# Load environment variables from .env file
load_dotenv()

# Check if running in pytest
TESTING = "PYTEST_CURRENT_TEST" in os.environ or os.getenv("TESTING", "False").lower() in ["true", "1", "yes"]

# Web application
WEBAPP_HOST = os.getenv("WEBAPP_HOST", "0.0.0.0")  # for listen on all interfaces
WEBAPP_PORT = int(os.getenv("WEBAPP_PORT", os.getenv("PORT", "8000")))  # Default port that most PaaS use

# Security Configuration
RATE_LIMIT_GENERAL = int(os.getenv("RATE_LIMIT_GENERAL", "20"))  # Requests per minute
RATE_LIMIT_PAYOUT = int(os.getenv("RATE_LIMIT_PAYOUT", "3"))  # Payout requests per minute
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "30"))  # Webhook requests per 10 seconds
MAX_WEBHOOK_PAYLOAD = int(os.getenv("MAX_WEBHOOK_PAYLOAD", str(1024 * 1024)))

# Bot configuration (vendor/admin commands and the operational alert channel)
BOT_ENABLED = os.getenv("BOT_ENABLED", "False" if TESTING else "True").lower() in ["true", "1", "yes"]
BOT_TOKEN = os.getenv("BOT_TOKEN", "123456:TEST_TOKEN" if TESTING else None)
if BOT_ENABLED and not BOT_TOKEN:
    raise ValueError("BOT_TOKEN environment variable is not set!")

# Admin configuration
ADMIN_CHAT_ID = os.getenv("ADMIN_CHAT_ID", "12345" if TESTING else None)

# Database configuration
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_NAME = os.getenv("DB_NAME", "payouts_test" if TESTING else "payouts")
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")

# Database URL for Tortoise ORM
DB_URL = os.getenv("DATABASE_URL", f"postgres://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}")
if TESTING:
    # Use SQLite in-memory for testing
    DB_URL = "sqlite://:memory:"

TORTOISE_ORM = {
    "connections": {"default": DB_URL},
    "apps": {
        "models": {
            "models": ["payout_engine.models", "aerich.models"],
            "default_connection": "default",
        },
    },
}

# Timezone configuration
PLATFORM_TIMEZONE = pytz.timezone(os.getenv("PLATFORM_TIMEZONE", "Asia/Dubai"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "AED")

# Earnings engine knobs
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "10"))  # percent
MINIMUM_PAYOUT_DEFAULT = Decimal(os.getenv("MINIMUM_PAYOUT_DEFAULT", "100.00"))
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
ROUNDING_MODE = os.getenv("ROUNDING_MODE", "half_up")
LEDGER_RETRY_ATTEMPTS = int(os.getenv("LEDGER_RETRY_ATTEMPTS", "3"))
PAYOUT_PROCESSING_SLA_HOURS = int(os.getenv("PAYOUT_PROCESSING_SLA_HOURS", "72"))

# Payment Gateway configuration
PAYMENT_GATEWAY_ENABLED = os.getenv("PAYMENT_GATEWAY_ENABLED", "True").lower() in ["true", "1", "yes"]
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY", "test_api_key" if TESTING else "demo_key")
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "https://test-payouts.example" if TESTING else "https://example.com")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "webhook_secret" if TESTING else "")


@dataclass(frozen=True)
class EngineConfig:
    """Tunable knobs of the earnings engine."""
    default_commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    minimum_payout_default: Decimal = MINIMUM_PAYOUT_DEFAULT
    grace_period_days: int = GRACE_PERIOD_DAYS
    rounding_mode: str = ROUNDING_MODE
    ledger_retry_attempts: int = LEDGER_RETRY_ATTEMPTS
    payout_processing_sla_hours: int = PAYOUT_PROCESSING_SLA_HOURS
    default_currency: str = DEFAULT_CURRENCY

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls()


def get_current_time():
    """Current time as an aware UTC datetime (storage timezone)."""
    return datetime.now(pytz.utc)


def ensure_timezone_aware(dt):
    """Normalize a datetime to aware UTC; naive values are treated as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return pytz.utc.localize(dt)
    return dt.astimezone(pytz.utc)


def to_platform_time(dt):
    """Convert a datetime to the platform timezone for display."""
    return ensure_timezone_aware(dt).astimezone(PLATFORM_TIMEZONE)
