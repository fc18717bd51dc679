"""FastAPI application entrypoint for the realtime voice service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .routers import credentials, realtime

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One pooled client for every token request.
    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        app.state.http_client = client
        if not settings.gemini_api_key:
            logger.warning("GEMINI_API_KEY not set; credential requests will fail")
        yield
    app.state.http_client = None


def create_app() -> FastAPI:
    """Instantiate and configure the FastAPI application."""
    application = FastAPI(
        title="voicelink",
        description="Issues ephemeral Gemini Live credentials and relays realtime voice sessions.",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Requested-With"],
    )
    application.include_router(credentials.router)
    application.include_router(realtime.router)

    @application.get("/")
    async def root() -> dict[str, str]:
        """Lightweight health endpoint for service discovery."""
        return {"service": "voicelink", "status": "ok"}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        # Leaves headroom for large audio fragments sent by the browser.
        ws_max_size=16 * 1024 * 1024,
    )
