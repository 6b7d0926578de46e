import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.endpoints.upload import router as upload_router
from app.core.config import Settings, settings as default_settings
from app.core.errors import ErrorKind, UploadError
from app.services.chunk_index import ChunkIndex, create_redis_client
from app.services.cleanup import start_cleanup_task
from app.services.storage.base import BaseStorage
from app.services.storage.factory import build_storage
from app.services.upload_service import UploadService

logging.basicConfig(
    level=default_settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    redis_client: Optional[redis.Redis] = None,
    storage: Optional[BaseStorage] = None,
) -> FastAPI:
    """
    Build the application with its own Redis client, blob store and services.

    Passing ``redis_client`` or ``storage`` replaces the ones built from
    settings; the app then leaves closing them to the caller.
    """
    settings = settings or default_settings
    owns_redis = redis_client is None
    owns_storage = storage is None
    redis_client = redis_client or create_redis_client(settings.redis_url, settings.REDIS_PASSWORD)
    storage = storage or build_storage(settings)

    index = ChunkIndex(
        redis_client,
        key_prefix=settings.CHUNK_INDEX_PREFIX,
        session_prefix=settings.SESSION_PREFIX,
        merge_job_prefix=settings.MERGE_JOB_PREFIX,
        session_ttl=settings.SESSION_TTL_SECONDS,
    )
    upload_service = UploadService(index, storage, completed_dir=settings.COMPLETED_DIR)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup fails here if Redis is unreachable
        await index.ping()
        logger.info(f"Connected to Redis at {settings.REDIS_ADDR}")
        cleanup_task = start_cleanup_task(
            index, storage, settings.SESSION_TTL_SECONDS, settings.CLEANUP_INTERVAL_SECONDS
        )
        logger.info(f"Upload service starting up (env={settings.ENV}, port={settings.SERVICE_PORT})")
        try:
            yield
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
                try:
                    await cleanup_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(f"Cleanup task ended with an error: {e}")
            if owns_storage:
                storage.close()
            if owns_redis:
                await redis_client.aclose()
            logger.info("Upload service shut down")

    app = FastAPI(
        title="Chunked Upload Service",
        version="1.0.0",
        lifespan=lifespan,
        openapi_url=None if settings.ENV == "production" else "/openapi.json",
        docs_url=None if settings.ENV == "production" else "/docs",
        redoc_url=None if settings.ENV == "production" else "/redoc",
    )
    app.state.settings = settings
    app.state.chunk_index = index
    app.state.storage = storage
    app.state.upload_service = upload_service

    @app.middleware("http")
    async def log_origin_middleware(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin:
            logger.info(f"Request from origin: {origin}")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        status_code = exc.kind.status_code
        log = logger.error if status_code >= 500 else logger.warning
        log(f"{exc.kind.value}: {exc.message} path={request.url.path}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "code": exc.kind.value},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Invalid request: {exc.errors()} path={request.url.path}")
        return JSONResponse(
            status_code=ErrorKind.INVALID_INPUT.status_code,
            content={"error": "Invalid request", "code": ErrorKind.INVALID_INPUT.value},
        )

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping():
        return "pong"

    app.include_router(upload_router, prefix="/upload", tags=["upload"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=default_settings.SERVICE_PORT)
