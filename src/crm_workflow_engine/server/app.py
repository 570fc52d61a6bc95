"""FastAPI app factory.

Endpoints are thin wrappers over the engine components built by
:func:`crm_workflow_engine.engine.runtime.build_engine`.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crm_workflow_engine import __version__
from crm_workflow_engine.engine.runtime import Engine, build_engine
from crm_workflow_engine.server.config import ServerSettings
from crm_workflow_engine.server.routes import router

logger = logging.getLogger(__name__)


def create_app(
    settings: ServerSettings | None = None, *, engine: Engine | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    engine = engine or build_engine(settings)

    app = FastAPI(
        title="CRM Workflow Engine",
        version=__version__,
        description="Trigger intake, cron tick and inspection API for CRM workflows.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings and the engine for request handlers.
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")
    logger.debug("App created", extra={"data_dir": str(settings.data_dir)})
    return app
