"""FastAPI application factory for the ticketing backend."""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException
from starlette.responses import FileResponse
from starlette.types import Scope

from ticketdesk.config import Config
from ticketdesk.storage.executor import QueryExecutor
from ticketdesk.web.routes import health_router


class _SPAStaticFiles(StaticFiles):
    """StaticFiles that falls back to index.html for unknown paths (SPA routing)."""

    async def get_response(self, path: str, scope: Scope) -> FileResponse:
        try:
            return await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code == 404:
                return await super().get_response("index.html", scope)
            raise


def create_app(config: Config, executor: QueryExecutor, lifespan=None) -> FastAPI:
    """Build and return a configured FastAPI application."""
    app = FastAPI(title="Ticketdesk", docs_url="/api/docs", lifespan=lifespan)
    app.state.executor = executor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )
    app.include_router(health_router)

    static_path = Path(config.static_dir)
    if static_path.is_dir():
        app.mount("/", _SPAStaticFiles(directory=str(static_path), html=True), name="static")

    return app
