from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from receipt_ledger.api.error_handlers import receipt_ledger_error_handler
from receipt_ledger.api.router import router as api_router
from receipt_ledger.bootstrap import bootstrap
from receipt_ledger.core.db import Database, create_database
from receipt_ledger.core.errors import ReceiptLedgerError
from receipt_ledger.core.logging import CorrelationIdMiddleware, configure_logging
from receipt_ledger.worker import tasks


def create_app(database: Database | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        # A database handed in by the caller stays open after shutdown.
        owned = database is None
        db = (database or create_database()).open()
        bootstrap(db)
        app.state.database = db
        # Eager tasks run in this process and share its pool.
        tasks.use_database(db)
        try:
            yield
        finally:
            tasks.use_database(None)
            if owned:
                db.close()

    app = FastAPI(title="Receipt Ledger", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(ReceiptLedgerError, receipt_ledger_error_handler)
    app.include_router(api_router)
    return app


app = create_app()
