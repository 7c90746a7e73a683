"""
FastAPI application for the WhatsApp CRM agent.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional

from api.dependencies import Runtime, build_runtime
from api.routes import router
from config import settings
from jobs import JobScheduler
from observability import trace_logger


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the application.

    An injected runtime (tests) is used as is; otherwise one is built from
    settings at startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup/shutdown."""
        trace_logger.info("Starting WhatsApp CRM Agent API")
        owned = runtime is None
        if owned:
            settings.validate_api_keys()
            app.state.runtime = build_runtime(settings)
        else:
            app.state.runtime = runtime

        scheduler = JobScheduler(app.state.runtime.store, app.state.runtime.settings)
        scheduler.start()

        yield

        trace_logger.info("Shutting down WhatsApp CRM Agent API")
        scheduler.stop()
        if owned:
            app.state.runtime.shutdown()

    app = FastAPI(
        title="WhatsApp CRM Agent",
        description="Multi-tenant WhatsApp sales and service agent with CRM tools and AI quota governance",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS middleware for the operator dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "WhatsApp CRM Agent",
            "version": "1.0.0",
            "status": "operational"
        }

    return app
