"""
Micro-Loan Back Office API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import BackOffice
from .activities import router as activities_router
from .cron import router as cron_router
from .customers import router as customers_router
from .links import router as links_router
from .loans import router as loans_router
from .settings import router as settings_router
from .. import __version__
from ..config import get_config
from ..errors import AppError, DatabaseError, ServiceError, to_error_response
from ..logging_config import get_logger, log_action, setup_logging

logger = get_logger("api")


def create_app(system: Optional[BackOffice] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Micro-Loan Back Office API",
        description="Loan applications, approvals, repayments and escalation jobs",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or BackOffice()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log_action(
            logger, "warning" if exc.status_code < 500 else "error",
            f"{request.method} {request.url.path} failed: {exc.message}",
            action="request_failed", resource=request.url.path,
            extra={"code": exc.code, "status_code": exc.status_code}
        )
        return JSONResponse(status_code=exc.status_code, content=to_error_response(exc))

    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(links_router, prefix="/links", tags=["Application Links"])
    app.include_router(settings_router, prefix="/settings", tags=["Settings"])
    app.include_router(activities_router, prefix="/activities", tags=["Activities"])
    app.include_router(cron_router, prefix="/cron", tags=["Cron"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint; also checks the storage backend"""
        try:
            app.state.system.storage.count(app.state.system.loan_manager.loans_table)
        except DatabaseError as e:
            raise ServiceError(f"Storage unavailable: {e.message}", service="storage") from e
        return {
            "status": "healthy",
            "service": "microloans_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "microloans.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
