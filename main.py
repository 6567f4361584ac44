#!/usr/bin/env python3
"""
apk-build-service: FastAPI service that turns web project ZIPs into Android APKs.
Credential required for all endpoints except /health and POST /api/auth.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from app.api.admin import router as admin_router
from app.api.auth import router as auth_router
from app.api.builds import router as builds_router
from app.core.build_service import get_build_service
from app.core.config import get_service_config
from app.core.errors import BuildServiceError
from app.core.logging import setup_logging
from app.core.request_logging import RequestLoggingMiddleware, get_request_id
from app.core.security import APIKeyMiddleware
from app.db.database import init_db

VERSION = "1.0.0"

config = get_service_config()

# Setup structured JSON logging
setup_logging(config.log_level)

logger = logging.getLogger(__name__)

# Initialize database on startup
init_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = get_build_service()
    service.startup()
    logger.info(
        f"service_started port={config.port} max_concurrent={config.max_concurrent_builds} "
        f"timeout_s={config.build_timeout_s:.0f} admin={'configured' if config.admin_enabled else 'not_set'}"
    )
    yield
    service.shutdown()
    logger.info("service_stopped")


# Create app
app = FastAPI(
    title="apk-build-service",
    description="Build Android APKs from web project archives",
    version=VERSION,
    lifespan=lifespan,
)


def custom_openapi():
    """Custom OpenAPI schema with security schemes for Swagger UI."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "apiKeyHeader": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "Admin key or token from POST /api/auth",
        },
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "description": "Token from POST /api/auth",
        },
    }

    # Apply security to every endpoint except the public ones
    public_paths = {"/health", "/api/auth"}
    for path, path_item in openapi_schema["paths"].items():
        for method_name, method in path_item.items():
            if not isinstance(method, dict):
                continue
            if path in public_paths and (path != "/api/auth" or method_name == "post"):
                continue
            method["security"] = [
                {"apiKeyHeader": []},
                {"bearerAuth": []},
            ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


@app.exception_handler(BuildServiceError)
async def build_service_error_handler(request: Request, exc: BuildServiceError):
    """Render service errors as {"detail", "error_code", ...}."""
    if exc.status_code >= 500:
        logger.error(f"request_failed path={request.url.path} error_code={exc.error_code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Never leak internals to the client."""
    logger.exception(f"unhandled_error path={request.url.path} request_id={get_request_id()}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


# Add authentication middleware (innermost)
app.add_middleware(APIKeyMiddleware)

# Add request logging middleware (wraps auth so 401s are logged too)
app.add_middleware(RequestLoggingMiddleware)

# CORS outermost so preflight requests never hit auth
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.cors_origins),
    allow_credentials="*" not in config.cors_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
)

# Include routes
app.include_router(auth_router)
app.include_router(builds_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=config.port)
