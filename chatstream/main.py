from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatstream.api.v1.endpoints import stream_endpoints
from chatstream.core.logging_setup import configure_logging
from chatstream.core.settings import settings


def create_app() -> FastAPI:
    level = configure_logging(production=settings.is_production_mode())

    app = FastAPI(
        title="Chatstream Assembler",
        version="1.0",
        description="Streaming response assembler for single and dual-panel chat runs.",
    )

    cors_env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if cors_env:
        allowed_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        allowed_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stream_endpoints.router, prefix="/api/v1", tags=["Streaming"])

    logging.info(
        "chatstream_app_ready environment=%s log_level=%s watchdog_timeout=%.1fs",
        settings.environment,
        level,
        settings.effective_watchdog_timeout(),
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
