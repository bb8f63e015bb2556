import asyncio
import contextlib
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from bchan.config import Settings
from bchan.db.database import create_tables, setup_database
from bchan.errors import BoardError
from bchan.routes import status as status_routes
from bchan.routes import threads as thread_routes
from bchan.services.cleanup import OrphanReconciler, run_periodically
from bchan.services.upload import UploadPipeline
from bchan.util.log_config import setup_logging
from bchan.util.redis_config import JsonCache, RateLimiter, create_redis, test_redis_connection
from bchan.util.s3_connect import S3Service
from bchan.util.tripcode import Tripcodes


# Error handling middleware
class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            error_id = str(uuid.uuid4())
            logger.error(
                f"Error ID: {error_id} - Request: {request.method} {request.url}\n"
                f"Error: {str(e)}\n{traceback.format_exc()}"
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "error_id": error_id,
                    "message": str(e) if self.debug else "An unexpected error occurred"
                }
            )


def build_storage(settings: Settings) -> S3Service:
    if not all([settings.aws_access_key, settings.aws_secret_key, settings.s3_endpoint]):
        logger.error("Missing required environment variables for S3 connection")
    return S3Service(
        access_key=settings.aws_access_key,
        secret_key=settings.aws_secret_key,
        endpoint_url=settings.s3_endpoint,
        public_url=settings.s3_public_url,
        region_name=settings.s3_region
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BoardError)
    async def board_error_handler(request: Request, exc: BoardError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Validation error", "details": details})

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


def create_app(
        settings: Optional[Settings] = None,
        storage=None,
        redis=None,
        engine=None,
        sessionmaker=None,
) -> FastAPI:
    """
    Build the application with all of its collaborators.

    Anything not passed in is created from settings, so tests can hand in
    fakes for storage and Redis and a throwaway database.
    """
    settings = settings or Settings.from_env()
    if storage is None:
        storage = build_storage(settings)
    if redis is None:
        redis = create_redis(settings.redis_url)
    if sessionmaker is None:
        engine, sessionmaker = setup_database(settings.database_url, echo=settings.db_echo)

    pipeline = UploadPipeline(
        storage,
        settings.images_bucket,
        settings.thumbnails_bucket,
        thumbnail_width=settings.thumbnail_width
    )
    reconciler = OrphanReconciler(storage, sessionmaker, settings.images_bucket, settings.thumbnails_bucket)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_tables and engine is not None:
            await create_tables(engine)

        await test_redis_connection(redis)

        s3_connected = await storage.check_connection(settings.images_bucket, settings.thumbnails_bucket)
        if not s3_connected:
            logger.warning("S3 connection test failed - file uploads may not work")
        else:
            logger.info("S3 connection verified successfully")

        cleanup_task = None
        if settings.cleanup_interval_hours > 0:
            cleanup_task = asyncio.create_task(run_periodically(reconciler, settings.cleanup_interval_hours))

        logger.info("Application started successfully")
        yield

        if cleanup_task is not None:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
        await redis.aclose()
        if engine is not None:
            await engine.dispose()
        logger.info("Application shutdown, resources cleaned up")

    app = FastAPI(title="bchan", version="1.0.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.storage = storage
    app.state.redis = redis
    app.state.sessionmaker = sessionmaker
    app.state.pipeline = pipeline
    app.state.reconciler = reconciler
    app.state.tripcodes = Tripcodes(settings.tripcode_salt)
    app.state.cache = JsonCache(redis)
    app.state.rate_limiter = RateLimiter(
        redis,
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max_requests
    )

    # Add middleware
    app.add_middleware(ErrorLoggingMiddleware, debug=settings.debug)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(status_routes.router)
    app.include_router(thread_routes.router)
    return app


def run():
    settings = Settings.from_env()
    setup_logging(settings.log_file, debug=settings.debug)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=8000,
        log_config=None,
        log_level=None,
    )


if __name__ == "__main__":
    run()
