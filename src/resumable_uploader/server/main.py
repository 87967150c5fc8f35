"""
Reference server application entry point

In-memory backend speaking the chunked upload protocol, for local demos
and end-to-end tests:

    python -m resumable_uploader.server.main
    uvicorn resumable_uploader.server.main:app
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..core.errors import ResultCode
from .endpoints import objects_router, router
from .storage import StorageRejection, UploadStorage

logger = logging.getLogger(__name__)


def create_app(prefix: Optional[str] = None, storage: Optional[UploadStorage] = None) -> FastAPI:
    """Build an app with its own storage; routes are mounted under ``prefix``."""
    prefix = (prefix if prefix is not None else settings.API_PREFIX).rstrip("/")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting reference upload server...")
        logger.info(f"🌐 Upload API under {prefix or '/'}")
        yield
        logger.info("🛑 Shutting down reference upload server...")

    app = FastAPI(
        title=settings.APP_TITLE,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.storage = storage or UploadStorage()

    @app.exception_handler(StorageRejection)
    async def handle_rejection(request: Request, exc: StorageRejection):
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"code": exc.code, "message": exc.message, "data": None},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "code": ResultCode.BAD_REQUEST,
                "message": f"Invalid request: {len(exc.errors())} validation error(s)",
                "data": None,
            },
        )

    app.include_router(router, prefix=prefix)
    app.include_router(objects_router)

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        storage = app.state.storage
        return {
            "status": "healthy",
            "sessions": len(storage.sessions),
            "objects": len(storage.objects),
        }

    return app


app = create_app()


def run():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    import uvicorn
    uvicorn.run(
        app,
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
