"""
Decision Pipeline API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import get_settings
from core.errors import PipelineError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Decision pipeline API starting up", version=settings.app_version)
    yield
    logger.info("Decision pipeline API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Scheduled KPI computation, rule-based alerts, decision cards and outcome tracking",
    lifespan=lifespan,
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Render domain errors as ``{success: false, error, code}``."""
    if exc.status_code >= 500:
        logger.error("api.pipeline_error", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query params are plain 400s in the same envelope."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(problems) or "invalid request", "code": "validation_error"},
    )


HTTP_ERROR_CODES = {401: "unauthorized", 403: "access_denied", 404: "not_found", 405: "method_not_allowed"}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": str(exc.detail),
            "code": HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        },
        headers=getattr(exc, "headers", None),
    )


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import alerts, decisions, jobs, outcomes, pipeline

app.include_router(pipeline.router)
app.include_router(alerts.router)
app.include_router(decisions.router)
app.include_router(outcomes.router)
app.include_router(jobs.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
