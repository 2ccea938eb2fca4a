"""
FastAPI server for the SwitcherFi swap settlement service
Hosts the Paystack webhook, the swap/admin API and health checks
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.paystack_webhook import router as paystack_router
from handlers.swap_api import router as swap_api_router
from services.transaction_ledger import get_transaction_ledger
from services.transfer_status_poller import transfer_poller_registry

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


def recover_stranded_settlements():
    """Flag OFF_RAMP swaps left between ledger settlement and payout by a crash"""
    try:
        flagged = get_transaction_ledger().flag_stranded_settlements()
    except Exception as e:
        logger.error(f"❌ STRANDED_SETTLEMENT_SCAN_FAILED: {e}")
        return []
    if flagged:
        logger.critical(f"🚨 STRANDED_SETTLEMENTS: {len(flagged)} flagged for manual reconciliation: {flagged}")
    else:
        logger.info("✅ No stranded settlements found")
    return flagged


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify schema, log configuration, flag stranded settlements.
    Shutdown: stop any transfer status pollers still running.
    """
    logger.info(f"🔧 Worker {os.getpid()} starting...")
    Config.log_environment_config()
    create_tables()
    recover_stranded_settlements()

    yield

    await transfer_poller_registry.stop_all()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title=f"{Config.PLATFORM_NAME} Swap Settlement",
    description="Token <-> Naira swap settlement and Paystack reconciliation",
    lifespan=lifespan,
)

app.include_router(paystack_router)
app.include_router(swap_api_router)


@app.get("/")
async def root():
    return {"message": f"{Config.PLATFORM_NAME} swap settlement service is running"}


@app.get("/health")
async def health_check():
    """Health check including database reachability"""
    database_ok = test_connection()
    content = {
        "status": "healthy" if database_ok else "degraded",
        "service": "swap-settlement",
        "database": "connected" if database_ok else "unavailable",
        "simulationMode": Config.SIMULATION_MODE,
        "activePollers": len(transfer_poller_registry),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(content=content, status_code=200 if database_ok else 503)
