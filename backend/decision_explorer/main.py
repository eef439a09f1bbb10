from contextlib import asynccontextmanager
from typing import Any, Dict
import time

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from decision_explorer import __version__
from decision_explorer.api.dependencies import new_correlation_id
from decision_explorer.api.routes import health, instances, nodes, pathways
from decision_explorer.core.config import get_settings
from decision_explorer.core.database import close_db_connection, create_db_and_tables
from decision_explorer.core.exceptions import PathwayError
from decision_explorer.utils.cache import cache_manager
from decision_explorer.utils.logger import setup_logging

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"]
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        response = await call_next(request)

        # Route templates keep label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code)
        ).inc()
        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(time.time() - start_time)

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        correlation_id = request.headers.get("X-Correlation-ID") or new_correlation_id()
        request.state.correlation_id = correlation_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else "unknown"
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                duration=f"{time.time() - start_time:.4f}s",
                error=str(exc),
                exc_info=True
            )
            raise

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=f"{time.time() - start_time:.4f}s"
        )

        response.headers["X-Correlation-ID"] = correlation_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings = get_settings()

    logger.info("Starting Decision Explorer API", version=__version__)

    try:
        await create_db_and_tables()
        logger.info(
            "API startup completed",
            environment=settings.ENVIRONMENT,
            debug=settings.DEBUG,
            scorer_enabled=settings.scorer.SCORER_ENABLED,
            cache_enabled=settings.redis.CACHE_ENABLED
        )
    except Exception as e:
        logger.error("Failed to start application", error=str(e), exc_info=True)
        raise

    yield

    logger.info("Shutting down Decision Explorer API")

    await cache_manager.close()
    await close_db_connection()
    logger.info("Application shutdown completed")


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or request.headers.get("X-Correlation-ID", "unknown")


async def pathway_exception_handler(request: Request, exc: PathwayError) -> JSONResponse:
    """Map domain errors to their HTTP status with a uniform error body"""
    correlation_id = _correlation_id(request)

    logger.warning(
        "Request rejected",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error=exc.error,
        message=exc.message
    )

    content = exc.to_dict()
    content["correlation_id"] = correlation_id
    return JSONResponse(status_code=exc.status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions"""
    correlation_id = _correlation_id(request)

    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True
    )

    settings = get_settings()
    if settings.ENVIRONMENT == "production":
        message = "An unexpected error occurred. Please try again later."
    else:
        message = str(exc)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": message,
            "correlation_id": correlation_id
        }
    )


def create_application() -> FastAPI:
    """Factory function to create FastAPI application"""
    settings = get_settings()

    app = FastAPI(
        title="Decision Explorer API",
        description="Clinical decision-pathway trees, patient-scored decision support and pathway tracking",
        version=__version__,
        openapi_url=f"/api/{settings.API_VERSION}/openapi.json" if settings.DEBUG else None,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    if settings.ENVIRONMENT == "production":
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=settings.ALLOWED_HOSTS
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"]
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(LoggingMiddleware)
    if settings.PROMETHEUS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    app.add_exception_handler(PathwayError, pathway_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    api_prefix = f"/api/{settings.API_VERSION}"
    app.include_router(health.router, prefix=api_prefix, tags=["Health"])
    app.include_router(pathways.router, prefix=api_prefix, tags=["Pathways"])
    app.include_router(nodes.router, prefix=api_prefix, tags=["Pathway Nodes"])
    app.include_router(instances.router, prefix=api_prefix, tags=["Pathway Tracking"])

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information"""
        return {
            "message": "Decision Explorer API",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "docs_url": "/docs" if settings.DEBUG else None,
            "health_check": f"{api_prefix}/health",
            "pathways_endpoint": f"{api_prefix}/pathways"
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint"""
        if not settings.PROMETHEUS_ENABLED:
            return JSONResponse(
                status_code=404,
                content={"error": "Metrics endpoint is disabled"}
            )
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# Create the FastAPI application
app = create_application()


def main():
    """Main function to run the application"""
    settings = get_settings()

    uvicorn.run(
        "decision_explorer.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )


if __name__ == "__main__":
    main()
