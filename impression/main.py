from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from config import Settings
from .jobs import ClientFactory, JobManager
from .models import ErrorBody
from .routes import router
from .store import JobStore, build_store


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # per-poll request lines from httpx are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        body = ErrorBody(**exc.detail)
    else:
        body = ErrorBody(error=str(exc.detail))
    return JSONResponse(
        body.model_dump(exclude_none=True),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = f"invalid {field}: {first.get('msg')}" if field else "invalid request"
    return JSONResponse(ErrorBody(error=message).model_dump(exclude_none=True), status_code=400)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    settings = settings or Settings()
    store = store or build_store(settings.job_store, settings.jobs_dir)
    manager = JobManager(settings, store, client_factory=client_factory)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        settings.ensure_dirs()
        manager.start()
        if not settings.api_token:
            logging.warning("REPLICATE_API_TOKEN is not set; only pass-through presets will work")
        logging.info("Impression relay ready (job store: %s)", type(store).__name__)
        yield
        await manager.shutdown()

    app = FastAPI(title="Impression Relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.jobs = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(router)

    return app


def run() -> None:
    configure_logging()
    uvicorn.run("impression.main:create_app", factory=True, host=config.HOST, port=config.PORT, reload=False)


if __name__ == "__main__":
    run()
