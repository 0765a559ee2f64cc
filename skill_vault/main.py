"""
Skill Vault application factory.

Run locally with ``python -m skill_vault.main`` (or the ``skill-vault``
console script).
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skill_vault.api.v1 import api_router
from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Database
from skill_vault.errors import ServiceError

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def register_error_handlers(app: FastAPI) -> None:
    """Turn service errors into ``{"error": ..., ...}`` JSON responses."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    database: Database = app.state.db
    await database.init_db()
    try:
        yield
    finally:
        await database.dispose()


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Skill Vault", debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database or Database.from_settings(settings)

    register_error_handlers(app)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "versioning": app.state.db.capabilities.versioning}

    return app


def run():
    settings = get_settings()
    uvicorn.run(
        "skill_vault.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
