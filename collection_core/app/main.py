from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .db import create_db_and_tables
from .logging_config import configure_logging, get_logger
from .routers.batches import router as batches_router
from .routers.collections import router as collections_router
from .routers.wcn import router as wcn_router

logger = get_logger("main")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Collection & WCN Core",
        description="Collection orders, WCN finalization and rectification, batched inventory ledger",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # collections first: its /wcn-register must win over /{order_id}
    app.include_router(collections_router)
    app.include_router(wcn_router)
    app.include_router(batches_router)

    @app.on_event("startup")
    def on_startup():
        configure_logging(level=config.LOG_LEVEL, fmt=config.LOG_FORMAT)
        logger.info("creating_tables", extra={"environment": config.ENVIRONMENT})
        create_db_and_tables()
        logger.info("database_ready")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
