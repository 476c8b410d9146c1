"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from setupkit.config import settings
from setupkit.database import engine
from setupkit.services.connectivity import ConnectivityTester
from setupkit.services.runtime import runtime

router = APIRouter(tags=["health"])


def get_health_tester() -> ConnectivityTester:
    return ConnectivityTester()


@router.get("/health")
async def health_check():
    """Lightweight liveness check (no database access)."""
    return {
        "status": "ok",
        "service": "setupkit",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check(tester: ConnectivityTester = Depends(get_health_tester)):
    """State database reachable, and the target database when one is loaded.

    Returns 503 when any dependency is unhealthy.
    """
    checks = {"service": "ok", "state_database": "unknown", "target_database": "not_configured"}
    overall_healthy = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["state_database"] = "ok"
    except Exception as e:
        checks["state_database"] = f"error: {type(e).__name__}"
        overall_healthy = False

    if runtime.is_loaded:
        result = await tester.test(runtime.provider, runtime.connection_string)
        checks["target_database"] = "ok" if result.success else f"error: {result.message}"
        overall_healthy = overall_healthy and result.success

    return JSONResponse(
        status_code=200 if overall_healthy else 503,
        content={
            "status": "healthy" if overall_healthy else "unhealthy",
            "service": "setupkit",
            "checks": checks,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )
