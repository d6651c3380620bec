from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Any, Dict
import time
import uuid

from .core.config import settings
from .core.logging import setup_logging, get_logger
from .api.v1 import api_router
from .api.v1.health import VERSION

# Setup logging
setup_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
    description="Multi-tenant CRM API: leads, appointments and chatbot flows",
    openapi_url=f"{settings.API_V1_STR}/openapi.json" if settings.DEBUG else None,
    docs_url=f"{settings.API_V1_STR}/docs" if settings.DEBUG else None,
    redoc_url=f"{settings.API_V1_STR}/redoc" if settings.DEBUG else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Add request logging and timing."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    tenant_id = request.headers.get("X-Tenant-ID")

    start_time = time.time()
    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={"request_id": request_id, "tenant_id": tenant_id}
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        f"Request completed: {request.method} {request.url.path} - "
        f"Status: {response.status_code} - Time: {process_time:.3f}s",
        extra={"request_id": request_id, "tenant_id": tenant_id}
    )

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(process_time)
    return response


def _error_envelope(request: Request, code: str, message: str, details: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = jsonable_encoder(details)
    return {
        "success": False,
        "error": error,
        "request_id": getattr(request.state, "request_id", None)
    }


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """HTTP errors keep their status code; dict details carry their own code."""
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {k: v for k, v in detail.items() if k not in ("code", "message")}
        content = _error_envelope(
            request,
            detail.get("code") or f"http_{exc.status_code}",
            detail.get("message") or detail.get("status") or "Request failed",
            extra
        )
    else:
        content = _error_envelope(request, f"http_{exc.status_code}", str(detail))

    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_envelope(request, "validation_error", "Validation error", exc.errors())
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"request_id": request_id})

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_envelope(request, "internal_error", "Internal server error")
    )


# Include routers
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info(f"Starting {settings.PROJECT_NAME}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Feature gating: {'enabled' if settings.FEATURE_GATING_ENABLED else 'disabled'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    from chatbot.llm import llm_service

    await llm_service.close()
    logger.info(f"Shutting down {settings.PROJECT_NAME}")


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "docs": f"{settings.API_V1_STR}/docs",
        "health": f"{settings.API_V1_STR}/health"
    }
