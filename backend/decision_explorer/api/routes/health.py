from typing import Any, Dict
from datetime import datetime, timezone
import asyncio
import platform
import time

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
import psutil
import redis.asyncio as redis
import structlog

from decision_explorer import __version__
from decision_explorer.api.dependencies import get_correlation_id
from decision_explorer.core.config import AppConstants, get_settings
from decision_explorer.core.database import check_db_health
from decision_explorer.services.scoring_service import ScoringService
from decision_explorer.utils.cache import cache_manager
from decision_explorer.utils.logger import get_log_level

logger = structlog.get_logger(__name__)
router = APIRouter()

scoring_service = ScoringService()


@router.get(
    "/health",
    summary="Basic Health Check",
    description="Basic health check endpoint for load balancers and monitoring"
)
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint for quick status verification.

    **Returns:**
    - **status**: Overall health status
    - **timestamp**: Current server timestamp
    - **version**: Service version
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "service": AppConstants.SERVICE_NAME
    }


@router.get(
    "/health/detailed",
    summary="Detailed Health Check",
    description="Health of the database, cache and pathway scorer plus process metrics"
)
async def detailed_health_check(
    correlation_id: str = Depends(get_correlation_id)
) -> Dict[str, Any]:
    """
    Component health check.

    The database is critical: when it is down the service reports unhealthy
    (503). Cache or scorer outages only degrade the service, since both are
    optional at request time.
    """
    start_time = time.time()

    health_results: Dict[str, Any] = {
        "overall_status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": correlation_id,
        "components": {},
        "warnings": [],
        "errors": []
    }

    checks = {
        "database": _check_database_health(),
        "redis": _check_redis_health(),
        "scorer": _check_scorer_health(),
    }

    for component, check in checks.items():
        try:
            health_results["components"][component] = await asyncio.wait_for(
                check,
                timeout=AppConstants.HEALTH_CHECK_TIMEOUT
            )
        except asyncio.TimeoutError:
            health_results["components"][component] = {
                "status": "unhealthy",
                "message": "Health check timed out"
            }
            health_results["errors"].append(f"{component} health check timed out")

    unhealthy_components = [
        name for name, result in health_results["components"].items()
        if result.get("status") != "healthy"
    ]
    critical_unhealthy = [
        name for name in unhealthy_components if name in AppConstants.CRITICAL_SERVICES
    ]

    if critical_unhealthy:
        health_results["overall_status"] = "unhealthy"
        health_results["errors"].append(f"Critical services unhealthy: {critical_unhealthy}")
    elif unhealthy_components:
        health_results["overall_status"] = "degraded"
        health_results["warnings"].append(f"Non-critical services unhealthy: {unhealthy_components}")

    health_results["system_info"] = _get_system_info()
    health_results["performance_metrics"] = {
        "health_check_duration": f"{time.time() - start_time:.4f}s",
        "process": _get_process_usage(),
    }

    logger.info(
        "Detailed health check completed",
        correlation_id=correlation_id,
        overall_status=health_results["overall_status"],
        unhealthy_components=unhealthy_components
    )

    if health_results["overall_status"] == "unhealthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health_results)
    if health_results["overall_status"] == "degraded":
        return JSONResponse(status_code=status.HTTP_206_PARTIAL_CONTENT, content=health_results)

    return health_results


async def _check_database_health() -> Dict[str, Any]:
    start_time = time.time()
    db_health = await check_db_health()
    return {
        "status": db_health["status"],
        "message": db_health["message"],
        "response_time": f"{time.time() - start_time:.4f}s"
    }


async def _check_redis_health() -> Dict[str, Any]:
    if not cache_manager.enabled:
        return {"status": "healthy", "message": "Cache disabled"}

    start_time = time.time()
    try:
        await cache_manager.ping()
        return {
            "status": "healthy",
            "message": "Redis connection is healthy",
            "response_time": f"{time.time() - start_time:.4f}s"
        }
    except (redis.RedisError, OSError) as e:
        return {
            "status": "unhealthy",
            "message": f"Redis check failed: {str(e)}",
            "response_time": f"{time.time() - start_time:.4f}s"
        }


async def _check_scorer_health() -> Dict[str, Any]:
    settings = get_settings()
    if not settings.scorer.SCORER_ENABLED:
        return {"status": "healthy", "message": "Scorer disabled; base confidences in use"}

    start_time = time.time()
    reachable = await scoring_service.ping()
    return {
        "status": "healthy" if reachable else "unhealthy",
        "message": "Scorer reachable" if reachable else "Scorer unreachable; base confidences in use",
        "url": settings.scorer.SCORER_BASE_URL,
        "response_time": f"{time.time() - start_time:.4f}s"
    }


def _get_system_info() -> Dict[str, Any]:
    settings = get_settings()
    return {
        "environment": settings.ENVIRONMENT,
        "debug_mode": settings.DEBUG,
        "api_version": settings.API_VERSION,
        "log_level": get_log_level(),
        "python_version": platform.python_version(),
        "configuration": {
            "cache_enabled": settings.redis.CACHE_ENABLED,
            "scorer_enabled": settings.scorer.SCORER_ENABLED,
            "prometheus_enabled": settings.PROMETHEUS_ENABLED
        }
    }


def _get_process_usage() -> Dict[str, Any]:
    process = psutil.Process()
    memory = process.memory_info()
    return {
        "rss_mb": round(memory.rss / (1024 ** 2), 2),
        "cpu_percent": process.cpu_percent(interval=None),
        "threads": process.num_threads(),
        "system_memory_percent": psutil.virtual_memory().percent
    }
