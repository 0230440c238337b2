from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from humanizer.config import Settings
from humanizer.db import init_db
from humanizer.logger import setup_logging
from humanizer.controllers import api

settings = Settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    yield


app = FastAPI(
    title="Humanizer API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(api.router)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render errors as ``{"error": message, "code": code, ...}``."""
    detail = exc.detail
    if isinstance(detail, dict):
        body = {k: v for k, v in detail.items() if k != "message"}
        body["error"] = detail.get("message", "")
    else:
        body = {"error": str(detail)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"error": "Invalid request", "code": "BAD_REQUEST"}
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


Instrumentator().instrument(app).expose(app)
