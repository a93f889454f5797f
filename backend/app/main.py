"""FastAPI Application Entry Point.

Configures the app, lifespan, CORS, and includes all route modules.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stitch.config import API_HOST, API_PORT, CORS_ORIGINS, STITCH_BASE_URL, CALLBACK_SECRET
from stitch.dispatcher import close_http_client

from .database import close_db, init_db

logger = logging.getLogger("stitch.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database and outbound HTTP client lifecycle."""
    await init_db()
    logger.info(f"Stitch engine ready; callbacks resolve against {STITCH_BASE_URL}")
    if not CALLBACK_SECRET:
        logger.warning(
            "CALLBACK_SECRET not set; callback URLs carry no token and any caller "
            "that knows a run id can complete its nodes."
        )
    yield
    await close_http_client()
    await close_db()


app = FastAPI(title="Stitch Execution Engine", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from .routes.stitch import router as runs_router  # noqa: E402
from .routes.ingest import router as ingest_router  # noqa: E402
from .routes.entities import router as entities_router  # noqa: E402
from .routes.flows import router as flows_router  # noqa: E402

app.include_router(runs_router)
app.include_router(ingest_router)
app.include_router(entities_router)
app.include_router(flows_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=API_HOST, port=API_PORT)
