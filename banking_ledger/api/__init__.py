"""
Banking Ledger API Application Factory

Thin HTTP boundary: validates payloads, calls the engines and translates
ledger errors into status codes.
"""

from typing import Optional
import uuid

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..errors import (
    InsufficientFundsError, InvalidArgumentError, LedgerError,
    LockTimeoutError, NotFoundError
)
from ..logging_config import correlation_context, setup_logging
from ..system import BankingSystem
from .users import router as users_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router


CORRELATION_HEADER = "X-Correlation-ID"

ERROR_STATUS = [
    (NotFoundError, 404),
    (InvalidArgumentError, 400),
    (InsufficientFundsError, 422),
    (LockTimeoutError, 503),
]


def status_for_error(error: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Banking Ledger API",
        description="Accounts, deposits and transfers over an append-only ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app.state.banking_system.config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        with correlation_context(correlation_id):
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=status_for_error(exc), content=exc.to_dict())

    # 422 is reserved for insufficient funds
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": InvalidArgumentError.code,
                "detail": jsonable_encoder(exc.errors())
            }
        )

    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banking_ledger_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(
        "banking_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
