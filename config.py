"""Configuration management for the code marketplace escrow service"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "audit.log")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Public URLs used when building timeline navigation links
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

    # Code-hosting provider
    GITHUB_API_BASE_URL = os.getenv("GITHUB_API_BASE_URL", "https://api.github.com").rstrip("/")
    GITHUB_USER_AGENT = os.getenv("GITHUB_USER_AGENT", "code-marketplace-escrow")
    # 64 hex chars (32 bytes) AES-256 key for seller access tokens at rest
    GITHUB_TOKEN_ENCRYPTION_KEY = os.getenv("GITHUB_TOKEN_ENCRYPTION_KEY")

    # Payment processor
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_API_BASE_URL = os.getenv("STRIPE_API_BASE_URL", "https://api.stripe.com").rstrip("/")

    # Outbound calls never hang longer than this
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

    # Marketplace economics
    PLATFORM_COMMISSION_RATE = Decimal(os.getenv("PLATFORM_COMMISSION_RATE", "0.18"))
    REVIEW_PERIOD_DAYS = int(os.getenv("REVIEW_PERIOD_DAYS", "7"))

    # Admin actions
    MIN_ADMIN_REASON_LENGTH = int(os.getenv("MIN_ADMIN_REASON_LENGTH", "10"))

    # Client-side collaborator acceptance polling cadence
    COLLABORATOR_POLL_INTERVAL_SECONDS = int(os.getenv("COLLABORATOR_POLL_INTERVAL_SECONDS", "30"))

    # Background jobs
    ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"
    ESCROW_RELEASE_BATCH_SIZE = int(os.getenv("ESCROW_RELEASE_BATCH_SIZE", "50"))
    ESCROW_RELEASE_SWEEP_INTERVAL_MINUTES = int(os.getenv("ESCROW_RELEASE_SWEEP_INTERVAL_MINUTES", "60"))
    HANDOVER_RECONCILIATION_INTERVAL_MINUTES = int(
        os.getenv("HANDOVER_RECONCILIATION_INTERVAL_MINUTES", "15")
    )
    HANDOVER_GRACE_PERIOD_MINUTES = int(os.getenv("HANDOVER_GRACE_PERIOD_MINUTES", "30"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Marketplace Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   GitHub API: {Config.GITHUB_API_BASE_URL}")
        logger.info(f"   Review period: {Config.REVIEW_PERIOD_DAYS} days")
        logger.info(f"   Commission rate: {Config.PLATFORM_COMMISSION_RATE}")
        if not Config.GITHUB_TOKEN_ENCRYPTION_KEY:
            logger.warning("⚠️ GITHUB_TOKEN_ENCRYPTION_KEY not set - seller tokens cannot be decrypted")
        if not Config.STRIPE_SECRET_KEY:
            logger.warning("⚠️ STRIPE_SECRET_KEY not set - refunds will fail")
