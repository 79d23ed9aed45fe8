import asyncio
import logging
import time
import uuid
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before settings are read
load_dotenv()

from app.core.config import settings
from app.core.logging import setup_logging, request_id_ctx
from app.api.router import api_router
from app.core.db import init_models
from app.core.redis import redis_manager
from app.modules.events.outbox import run_outbox_relay
from app.modules.ingestion.jobs import run_ingestion_worker

setup_logging()
logger = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)

@app.middleware("http")
async def request_context(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    token = request_id_ctx.set(rid)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %d in %.2fms", request.method, request.url.path, response.status_code, elapsed_ms)
        response.headers["x-request-id"] = rid
        return response
    finally:
        request_id_ctx.reset(token)

@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.critical("Unhandled exception for %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "An internal server error occurred."})

def _uses_redis() -> bool:
    return settings.RUN_GUARD_PROVIDER == "redis" or (settings.EVENT_BUS_PROVIDER or "").lower() == "redis"

@app.on_event("startup")
async def on_startup():
    await init_models()
    if _uses_redis():
        await redis_manager.connect()
    tasks = [asyncio.create_task(run_outbox_relay())]
    if settings.INGEST_WORKER_ENABLED:
        tasks.append(asyncio.create_task(run_ingestion_worker()))
    app.state.background_tasks = tasks
    logger.info("%s started (env=%s, storage=%s)", settings.APP_NAME, settings.ENV, settings.OBJECT_STORAGE_PROVIDER)

@app.on_event("shutdown")
async def on_shutdown():
    for task in getattr(app.state, "background_tasks", []):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await redis_manager.close()

app.include_router(api_router, prefix=settings.API_PREFIX)
