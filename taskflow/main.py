"""
Taskflow Submission Service

FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskflow.api.middleware.request_id import RequestIdMiddleware
from taskflow.api.v1 import router as api_v1_router
from taskflow.config import get_settings
from taskflow.database import close_db, init_db
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.errors import FORBIDDEN, TaskflowError
from taskflow.logging_config import configure_logging, get_logger

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Runs startup and shutdown tasks.
    """
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    # Startup
    logger.info("Starting %s v%s", settings.project_name, settings.version)
    await init_db()
    logger.info("Database initialized")

    pipeline = SubmissionPipeline(settings)
    pipeline.store.ensure_layout()
    app.state.pipeline = pipeline
    logger.info("Staging area ready at %s", pipeline.store.root)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await pipeline.close()
    logger.info("Background processing finished")
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.project_name,
    description="""
    Taskflow Submission Service

    Task status lifecycle, submission staging and evidence rendering.

    ## Features

    - **Status triggers**: role-gated transitions with engagement history
    - **Submissions**: validated uploads staged for evidence rendering
    - **Group tasks**: one submission shared by every group member
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# add_middleware stacks innermost-first, so the last one added is outermost
_cors_origins = [
    "http://localhost:3000",
    "http://localhost:4200",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:4200",
]

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _response_headers(request: Request) -> dict:
    headers = {}
    req_id = getattr(request.state, "request_id", None)
    if req_id:
        headers["X-Request-ID"] = req_id
    return headers


@app.exception_handler(TaskflowError)
async def taskflow_exception_handler(request: Request, exc: TaskflowError):
    """Rejections are 403 {"error": ...}; processing failures are 500."""
    if exc.category == FORBIDDEN:
        status_code = status.HTTP_403_FORBIDDEN
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Processing error on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content=exc.to_payload(),
        headers=_response_headers(request),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    headers = _response_headers(request)
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation error", "errors": errors},
        headers=_response_headers(request),
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception,
):
    """Handle unexpected exceptions."""
    logger.exception("Unhandled exception: %s", exc)
    req_id = getattr(request.state, "request_id", None)
    if settings.debug:
        content = {
            "detail": str(exc),
            "type": type(exc).__name__,
            "request_id": req_id,
        }
    else:
        content = {"detail": "Internal server error", "request_id": req_id}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
        headers=_response_headers(request),
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Check application health."""
    return {
        "status": "ok",
        "version": settings.version,
        "database": "connected",
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "docs": "/docs" if settings.debug else "disabled",
        "api": {
            "v1": "/api/v1",
        },
    }


app.include_router(
    api_v1_router,
    prefix=settings.api_v1_prefix,
)


# Main entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "taskflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
