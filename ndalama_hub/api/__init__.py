"""
NdalamaHub API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from .companies import router as companies_router
from .deps import LendingSystem, get_lending_system
from .loans import router as loans_router
from .reports import router as reports_router


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = system.config if system else get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    app = FastAPI(
        title="NdalamaHub Lending API",
        description="Employer-linked loan origination, servicing and repayment tracking",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LendingSystem(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(companies_router, prefix="/companies", tags=["Companies"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "ndalama_hub_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "NdalamaHub Lending API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "companies": "/companies",
                "loans": "/loans",
                "reports": "/reports",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "ndalama_hub.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )


__all__ = ["create_app", "run_server", "LendingSystem", "get_lending_system"]
