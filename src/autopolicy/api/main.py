from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from autopolicy import __version__
from autopolicy.api.routes import admission, health
from autopolicy.config import get_settings
from autopolicy.logging import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(get_settings().log_level)
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="AutoPolicy Admission Webhook",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.include_router(admission.router, tags=["admission"])
    app.include_router(health.router, tags=["health"])
    return app


app = create_app()
