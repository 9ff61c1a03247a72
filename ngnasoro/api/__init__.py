"""
Loan Repayment Service API Application Factory
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .dependencies import get_system
from .loans import router as loans_router
from .payments import router as payments_router
from .reminders import router as reminders_router
from .notifications import router as notifications_router
from .audit import router as audit_router
from .calculator import router as calculator_router
from ..config import get_config
from ..logging_config import get_logger, correlation_context


logger = get_logger("ngnasoro.api")

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware:
    """Binds the caller's correlation id (or a fresh one) to everything logged for a request"""

    async def __call__(self, request: Request, call_next):
        with correlation_context(request.headers.get(CORRELATION_HEADER)) as correlation_id:
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the daily reminder trigger when enabled, stop it on shutdown"""
    settings = get_config()
    system = None
    if settings.scheduler_enabled:
        system = get_system()
        system.scheduler.start()
        logger.info("Reminder scheduler enabled (%s)", settings.reminder_cron)

    yield

    if system is not None:
        system.scheduler.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="N'GNA SÔRÔ! Loan Repayment API",
        description="Repayment schedules, payment recording and reminders for SFD loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(CorrelationIdMiddleware())

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(reminders_router, prefix="/reminders", tags=["Reminders"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])
    app.include_router(calculator_router, prefix="/calculator", tags=["Calculator"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "ngnasoro_loan_repayment",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "N'GNA SÔRÔ! Loan Repayment API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "payments": "/payments",
                "reminders": "/reminders",
                "notifications": "/notifications",
                "audit": "/audit",
                "calculator": "/calculator",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "ngnasoro.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
