"""
Code Marketplace Escrow Service
FastAPI application: transaction lifecycle routes plus the background scheduler
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from config import Config
from routes.admin_transactions import router as admin_transactions_router
from routes.transactions import router as transactions_router

logger = logging.getLogger(__name__)

AUDIT_HANDLER_MARKER = "_marketplace_audit"


def configure_logging(audit_log_file: Optional[str] = None):
    """Root log level plus the audit file handler; safe to call more than once"""
    level = getattr(logging, Config.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger().setLevel(level)

    audit = logging.getLogger("audit")
    audit.setLevel(logging.INFO)
    if any(getattr(handler, AUDIT_HANDLER_MARKER, False) for handler in audit.handlers):
        return
    audit_handler = logging.FileHandler(audit_log_file or Config.AUDIT_LOG_FILE)
    audit_handler.setFormatter(logging.Formatter("%(asctime)s [AUDIT] %(levelname)s - %(message)s"))
    setattr(audit_handler, AUDIT_HANDLER_MARKER, True)
    audit.addHandler(audit_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and start background jobs for this worker"""
    from database import create_tables
    from jobs.marketplace_scheduler import MarketplaceScheduler

    configure_logging()
    Config.log_environment_config()
    create_tables()

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = MarketplaceScheduler()
        scheduler.start()

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Marketplace service shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Code Marketplace Escrow Service",
        description="Escrow and GitHub repository transfer lifecycle",
        lifespan=lifespan,
    )
    app.include_router(transactions_router)
    app.include_router(admin_transactions_router)

    @app.get("/health")
    async def health():
        from database import check_database_connection

        database_ok = check_database_connection()
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
