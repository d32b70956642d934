"""Configuration management using environment variables"""
import logging
import os
import secrets
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Development placeholder for secrets (not secure - for local testing only)
DEV_SECRET_PLACEHOLDER = "test_secret_dev"


class Settings:
    """Application settings read once from the environment"""

    def __init__(self):
        # Environment
        self.environment = os.getenv("ENVIRONMENT", "development")
        is_production = self.environment == "production"

        # Payment processor credentials
        if is_production:
            self.payment_api_key = self._get_required("PAYMENT_API_KEY")
            self.payment_webhook_secret = self._get_required("PAYMENT_WEBHOOK_SECRET")

            # Reject test secrets in production
            if self.payment_webhook_secret == DEV_SECRET_PLACEHOLDER:
                raise ValueError(
                    f"Cannot use test secret '{DEV_SECRET_PLACEHOLDER}' in production mode. "
                    "Set a real PAYMENT_WEBHOOK_SECRET from your payment processor dashboard."
                )
        else:
            self.payment_api_key = os.getenv("PAYMENT_API_KEY", "")
            self.payment_webhook_secret = os.getenv("PAYMENT_WEBHOOK_SECRET", DEV_SECRET_PLACEHOLDER)

            if self.payment_webhook_secret == DEV_SECRET_PLACEHOLDER:
                logger.warning(
                    "⚠️  Using default PAYMENT_WEBHOOK_SECRET - signatures from the real processor will not validate"
                )

        self.payment_api_base_url = os.getenv("PAYMENT_API_BASE_URL", "https://api.stripe.com/v1")
        self.payment_api_timeout = float(os.getenv("PAYMENT_API_TIMEOUT", "10.0"))  # seconds

        # Cron endpoint protection (unchecked when empty, e.g. local development)
        self.cron_secret = os.getenv("CRON_SECRET", "")
        if is_production and not self.cron_secret:
            self.cron_secret = secrets.token_urlsafe(32)
            logger.warning(
                "⚠️  No CRON_SECRET provided - generated a random one, the cron endpoint is unreachable until it is set"
            )

        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "8000"))
        self.public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:3002")  # links in email

        # Database configuration
        self.database_url = os.getenv(
            "DATABASE_URL",
            "sqlite+aiosqlite:///./marketplace.db"
        )

        # Fee schedule (percentages parsed as Decimal, never float)
        self.buyer_fee_percent = self._get_decimal("BUYER_FEE_PERCENT", "6.5")
        self.buyer_flat_fee_cents = int(os.getenv("BUYER_FLAT_FEE_CENTS", "15"))
        self.vendor_fee_percent = self._get_decimal("VENDOR_FEE_PERCENT", "6.5")
        self.vendor_flat_fee_cents = int(os.getenv("VENDOR_FLAT_FEE_CENTS", "15"))
        self.external_seller_fee_percent = self._get_decimal("EXTERNAL_SELLER_FEE_PERCENT", "3.5")
        self.application_fee_percent = self._get_decimal("APPLICATION_FEE_PERCENT", "13")
        self.cancellation_fee_percent = self._get_decimal("CANCELLATION_FEE_PERCENT", "25")
        self.grace_period_minutes = int(os.getenv("GRACE_PERIOD_MINUTES", "60"))
        self.balance_invoice_threshold_cents = int(os.getenv("BALANCE_INVOICE_THRESHOLD_CENTS", "5000"))
        self.age_invoice_threshold_days = int(os.getenv("AGE_INVOICE_THRESHOLD_DAYS", "40"))
        self.auto_deduct_max_percent = self._get_decimal("AUTO_DEDUCT_MAX_PERCENT", "50")

        # Vendors must connect a payment account before confirming orders (production default)
        self.require_payment_account_to_confirm = os.getenv(
            "REQUIRE_PAYMENT_ACCOUNT_TO_CONFIRM",
            "true" if is_production else "false"
        ).lower() == "true"

        self.default_vertical = os.getenv("DEFAULT_VERTICAL", "farmers_market")

        # Delivery transports (a transport with no credentials is skipped)
        self.email_api_url = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")
        self.email_api_key = os.getenv("EMAIL_API_KEY", "")
        self.email_from = os.getenv("EMAIL_FROM", "noreply@mail.farmersmarketing.app")
        self.sms_api_url = os.getenv("SMS_API_URL", "https://api.twilio.com/2010-04-01")
        self.sms_account_sid = os.getenv("SMS_ACCOUNT_SID", "")
        self.sms_auth_token = os.getenv("SMS_AUTH_TOKEN", "")
        self.sms_from_number = os.getenv("SMS_FROM_NUMBER", "")
        self.push_gateway_url = os.getenv("PUSH_GATEWAY_URL", "")
        self.push_gateway_token = os.getenv("PUSH_GATEWAY_TOKEN", "")
        self.delivery_timeout = float(os.getenv("DELIVERY_TIMEOUT", "10.0"))  # seconds

        # Side-effect queue
        self.task_queue_max_size = int(os.getenv("TASK_QUEUE_MAX_SIZE", "1000"))
        self.task_max_attempts = int(os.getenv("TASK_MAX_ATTEMPTS", "3"))
        self.task_retry_backoff_seconds = float(os.getenv("TASK_RETRY_BACKOFF_SECONDS", "2.0"))

        # In-process expiry sweep (0 disables it; cron endpoint still works)
        self.expiry_sweep_interval_minutes = int(os.getenv("EXPIRY_SWEEP_INTERVAL_MINUTES", "0"))
        self.expiry_batch_size = int(os.getenv("EXPIRY_BATCH_SIZE", "100"))

        # Logging
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

    def _get_required(self, key: str) -> str:
        """Get required environment variable or raise error."""
        value = os.getenv(key, "").strip()
        if not value:
            raise ValueError(
                f"Missing required environment variable: {key}. "
                f"Required in production mode."
            )
        return value

    def _get_decimal(self, key: str, default: str) -> Decimal:
        """Parse a percentage from its string form so no float ever enters fee math."""
        raw = os.getenv(key, default).strip()
        try:
            value = Decimal(raw)
        except InvalidOperation:
            raise ValueError(f"Invalid decimal value for {key}: {raw!r}")
        if value < 0 or value > 100:
            raise ValueError(f"{key} must be between 0 and 100, got {raw}")
        return value


# Global settings instance
settings = Settings()
