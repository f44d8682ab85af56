# main.py
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.http_errors import install_error_handlers
from core.providers import init_providers
from core.settings import get_settings

# Routers
from files.router import router as files_router
from health.router import router as health_router
from webhook.router import router as webhook_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and initialize the configured instance before serving traffic."""
    providers = await init_providers(app, get_settings())
    log.info("[Startup] %d instance(s) ready: %s", len(providers.instances), ", ".join(providers.instances) or "-")
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="s3uplink", lifespan=lifespan)

    origins = settings.instance.cors_origins if settings.instance else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)

    app.include_router(health_router)
    app.include_router(files_router)
    app.include_router(webhook_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "s3uplink"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )
