"""
slidepipe HTTP service - operator control and status.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .routes import control
from .service import PipelineService


def create_app(
    service: PipelineService,
    manage_lifecycle: bool = True,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    """
    Build the FastAPI app around a pipeline service.

    Args:
        service: The pipeline to expose
        manage_lifecycle: Start the service on app startup and stop it on
            shutdown (False when the caller owns the lifecycle, e.g. tests)
        cors_origins: Browser origins allowed to call the API
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                service.stop()

    app = FastAPI(title="slidepipe", version=__version__, lifespan=lifespan)

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.pipeline = service
    app.include_router(control.router)
    return app
