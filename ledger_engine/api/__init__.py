"""
Ledger Engine API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .admin import router as admin_router
from .. import __version__
from ..errors import (
    ConflictError, InconsistencyError, InsufficientFundsError, LedgerError,
    NotFoundError, StorageError, TransferError, TransferErrorCode, ValidationError
)
from ..logging_config import get_logger, log_action


logger = get_logger("ledger_engine.api")

TRANSFER_STATUS_CODES = {
    TransferErrorCode.USER_NOT_FOUND: 404,
    TransferErrorCode.INSUFFICIENT_BALANCE: 400,
    TransferErrorCode.DEBIT_FAILED: 409,
    TransferErrorCode.CREDIT_FAILED: 409,
}

ERROR_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InsufficientFundsError, 400),
    (StorageError, 503),
]


def _error_status(exc: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def transfer_error_handler(request: Request, exc: TransferError):
    return JSONResponse(
        status_code=TRANSFER_STATUS_CODES.get(exc.code, 400),
        content=exc.to_response()
    )


async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=_error_status(exc), content={"detail": exc.message})


async def inconsistency_handler(request: Request, exc: InconsistencyError):
    log_action(
        logger, "critical", f"Inconsistency surfaced to caller: {exc.message}",
        tenant_id=exc.tenant_id, transaction_id=exc.transaction_id,
        action="inconsistency", resource=f"account:{exc.account_id}",
        extra={"amount": str(exc.amount), "path": request.url.path}
    )
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "code": "inconsistency",
            "message": exc.message,
            "transaction_id": exc.transaction_id
        }
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Ledger Engine API",
        description="Multi-tenant money movement with paired ledger entries",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TransferError, transfer_error_handler)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(InconsistencyError, inconsistency_handler)

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "ledger_engine_api",
            "version": __version__
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "ledger_engine.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
