import logging
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from filevault.api.routes import auth, files
from filevault.core.config import Settings, settings as default_settings
from filevault.core.database import Base, create_db_engine, create_session_factory
from filevault.core.exceptions import FileVaultError
from filevault.core.logging_config import setup_logging
from filevault.core.scheduler import create_scheduler, start_scheduler, stop_scheduler
from filevault.storage.chunked_storage import ChunkedBlobStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the application with its own metadata engine and blob store.

    Both storage handles live on app.state for the process lifetime and are
    handed to routes through dependencies; the lifespan creates their tables
    on startup and disposes them on shutdown.
    """
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL)

    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    blob_store = ChunkedBlobStore(
        settings.BLOB_DATABASE_URL,
        bucket_name=settings.BLOB_BUCKET_NAME,
        chunk_size=settings.BLOB_CHUNK_SIZE,
    )
    scheduler = create_scheduler(session_factory, blob_store, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: create tables, open the blob store, start the reconcile job
        Shutdown: stop the job and release both connection pools
        """
        Base.metadata.create_all(bind=engine)
        blob_store.init()
        if settings.RECONCILE_ENABLED:
            start_scheduler(scheduler)
        logger.info("filevault started (env=%s)", settings.APP_ENV)
        yield
        stop_scheduler(scheduler)
        blob_store.close()
        engine.dispose()
        logger.info("filevault stopped")

    app = FastAPI(
        title="filevault API",
        description="Authenticated file storage backed by a chunked blob store",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.blob_store = blob_store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if not settings.is_production:
        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "%s %s %d %.1fms",
                request.method, request.url.path, response.status_code, elapsed_ms,
            )
            return response

    def error_response(status_code: int, message: str, exc: Exception | None = None) -> JSONResponse:
        content = {"message": message}
        if exc is not None and status_code >= 500 and not settings.is_production:
            content["stack"] = "".join(traceback.format_exception(exc))
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(FileVaultError)
    async def filevault_exception_handler(request: Request, exc: FileVaultError):
        if exc.status_code >= 500:
            # Detail stays in the server log; callers get a generic message
            logger.error(
                "%s on %s %s: %s",
                type(exc).__name__, request.method, request.url.path, exc.message,
                exc_info=exc,
            )
            return error_response(exc.status_code, "Something went wrong on the server", exc)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled %s on %s %s",
            type(exc).__name__, request.method, request.url.path,
            exc_info=exc,
        )
        return error_response(500, "Something went wrong on the server", exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):
        message = str(exc.detail) if exc.detail else "Request failed"
        response = error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"Missing parameters: {', '.join(missing_fields)}"
        else:
            message = "Invalid request parameters"
        return error_response(400, message)

    app.include_router(auth.router, prefix="/api")
    if settings.PUBLIC_FILE_ACCESS:
        app.include_router(files.public_router, prefix="/api")
        logger.warning("Public file access is enabled: /api/files/public/{filename}")
    app.include_router(files.router, prefix="/api")

    @app.get("/")
    def root():
        """Root endpoint - API information"""
        return {"message": "filevault API", "version": "1.0.0"}

    @app.get("/health")
    def health():
        """Health check endpoint - used by monitoring/deployment tools"""
        return {"status": "healthy", "environment": settings.APP_ENV}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("filevault.main:app", host="0.0.0.0", port=8000)
