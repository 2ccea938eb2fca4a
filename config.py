"""Configuration management for the SwitcherFi swap settlement service"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()

    if ENVIRONMENT:
        IS_PRODUCTION = ENVIRONMENT in ("production", "prod")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "SwitcherFi")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    if DATABASE_URL:
        DATABASE_SOURCE = "SQLite" if DATABASE_URL.startswith("sqlite") else "PostgreSQL"
    else:
        DATABASE_SOURCE = "NOT CONFIGURED"

    # Paystack (fiat payment rail)
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/")
    PAYSTACK_TIMEOUT_SECONDS = int(os.getenv("PAYSTACK_TIMEOUT_SECONDS", "30"))
    PAYSTACK_CURRENCY = "NGN"

    # Sui ledger / treasury
    SUI_RPC_URL = os.getenv("SUI_RPC_URL", "https://fullnode.testnet.sui.io:443")
    SUI_RPC_TIMEOUT_SECONDS = int(os.getenv("SUI_RPC_TIMEOUT_SECONDS", "30"))
    TREASURY_ID = os.getenv("TREASURY_ID")
    SWAP_CONTRACT_ID = os.getenv("SWAP_CONTRACT_ID")

    # Token crediting endpoint used for ON_RAMP settlement
    TOKEN_CREDITING_URL = os.getenv("TOKEN_CREDITING_URL")
    TOKEN_CREDITING_TIMEOUT_SECONDS = int(os.getenv("TOKEN_CREDITING_TIMEOUT_SECONDS", "60"))

    # Simulation mode swaps every external adapter for a simulated one.
    # It is an explicit switch and is logged loudly on startup.
    SIMULATION_MODE = _env_flag("SIMULATION_MODE")

    # Admission control
    BALANCE_CHECK_TIMEOUT_SECONDS = float(os.getenv("BALANCE_CHECK_TIMEOUT_SECONDS", "5"))
    LIMITS_WARNING_RATIO = Decimal(os.getenv("LIMITS_WARNING_RATIO", "0.8"))

    # Transfer status polling
    TRANSFER_STATUS_POLL_INTERVAL_SECONDS = float(
        os.getenv("TRANSFER_STATUS_POLL_INTERVAL_SECONDS", "10")
    )

    # Stranded OFF_RAMP settlements (ledger settled, no payout) older than this
    # are flagged for manual reconciliation
    STRANDED_SETTLEMENT_MINUTES = int(os.getenv("STRANDED_SETTLEMENT_MINUTES", "15"))

    # Optional file sink for the audit JSON lines (audit_logs table is always written)
    AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE")

    # Admin HTTP surface; when set, requests must carry X-Admin-Token
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    # Simulated balances used only when SIMULATION_MODE is on
    SIMULATED_FIAT_BALANCE = Decimal(os.getenv("SIMULATED_FIAT_BALANCE", "5000000"))
    SIMULATED_TREASURY_BALANCES = {
        "SUI": Decimal(os.getenv("SIMULATED_SUI_BALANCE", "950")),
        "USDC": Decimal(os.getenv("SIMULATED_USDC_BALANCE", "4800")),
        "USDT": Decimal(os.getenv("SIMULATED_USDT_BALANCE", "2850")),
    }

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Service Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Platform: {Config.PLATFORM_NAME}")

        if Config.DATABASE_SOURCE == "NOT CONFIGURED":
            logger.error(f"   ❌ Database: {Config.DATABASE_SOURCE} - Check DATABASE_URL!")
        else:
            logger.info(f"   Database: {Config.DATABASE_SOURCE}")

        if Config.PAYSTACK_SECRET_KEY:
            logger.info("   PAYSTACK_SECRET_KEY: ✅ Configured")
        elif Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: PAYSTACK_SECRET_KEY not configured!")
        else:
            logger.warning("⚠️ PAYSTACK_SECRET_KEY not configured - payouts and webhooks disabled")

        if Config.TREASURY_ID:
            logger.info(f"   Treasury: {Config.TREASURY_ID}")
        else:
            logger.warning("⚠️ TREASURY_ID not configured - ON_RAMP admission will fail closed")

        if Config.SIMULATION_MODE:
            if Config.IS_PRODUCTION:
                logger.critical("🚨 SIMULATION_MODE is ON in production - no real money will move!")
            else:
                logger.warning("⚠️ SIMULATION_MODE: external adapters are simulated")

        logger.info(f"   Balance check timeout: {Config.BALANCE_CHECK_TIMEOUT_SECONDS}s")
        logger.info(f"   Transfer poll interval: {Config.TRANSFER_STATUS_POLL_INTERVAL_SECONDS}s")
