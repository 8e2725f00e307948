# lotledger/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from lotledger import __version__
from lotledger.api.routers.catalog_items import router as catalog_items_router
from lotledger.api.routers.lot_entries import router as lot_entries_router
from lotledger.api.routers.reconcile import router as reconcile_router
from lotledger.core.config import get_settings
from lotledger.core.logging import setup_logging
from lotledger.db.base import init_models
from lotledger.db.session import close_engine
from lotledger.http_problem_handlers import register_exception_handlers
from lotledger.metrics import router as metrics_router

logger = logging.getLogger("lotledger")


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
    init_models()

    app = FastAPI(
        title="Lot Ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan,
    )
    register_exception_handlers(app)

    # ===========================
    #        批次台账
    # ===========================
    app.include_router(lot_entries_router)
    app.include_router(catalog_items_router)

    # ===========================
    #     对账 / 观测
    # ===========================
    app.include_router(reconcile_router)
    app.include_router(metrics_router)

    logger.info("lot ledger app created (env=%s)", settings.ENV)
    return app


app = create_app()
