"""
FastAPI application entry point for the CUFE invoice backend.

Creates the app instance, the validation error handler, CORS, and registers
the routers.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cufe_backend.config import settings
from cufe_backend.routes.health import router as health_router
from cufe_backend.routes.invoices import router as invoices_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def _get_cors_origins() -> list[str]:
    """
    Allowed CORS origins.

    Production uses CORS_ALLOWED_ORIGINS (none when unset); any other
    environment allows all origins for local development.
    """
    if settings.is_production():
        if settings.CORS_ALLOWED_ORIGINS:
            logger.info(f"CORS configured for production with {len(settings.CORS_ALLOWED_ORIGINS)} allowed origins")
            return list(settings.CORS_ALLOWED_ORIGINS)
        logger.warning(
            "CORS_ALLOWED_ORIGINS not set in production. "
            "No web origins allowed."
        )
        return []

    logger.info(f"CORS configured for {settings.ENVIRONMENT}: allowing all origins")
    return ["*"]


app = FastAPI(
    title="CUFE Invoice API",
    description="Acquisition, parsing and categorization of DIAN electronic invoices",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc"
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log request validation errors (never the body: it may carry a whole PDF)."""
    logger.error(
        f"Validation error on {request.method} {request.url.path}: {exc.errors()}"
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "details": jsonable_errors(exc),
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """exc.errors() may hold exception objects in 'ctx'; keep only JSON-safe fields."""
    return [
        {key: error[key] for key in ("type", "loc", "msg") if key in error}
        for error in exc.errors()
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(invoices_router)

logger.info("FastAPI app initialized successfully")
