"""Admin system views: cache statistics, cache reset and recent logs."""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from stazama.app.routes.auth import require_permission
from stazama.app.routes.telemetry import received_errors, received_metrics
from stazama.services.cache_service import cache_service, track_cache_performance
from stazama.services.monitoring import monitoring

router = APIRouter(prefix="/api/admin/system", tags=["admin"])


@router.get("/cache", dependencies=[Depends(require_permission("can_manage_system"))])
async def cache_stats():
    stats = track_cache_performance()
    return {**stats.as_dict(), "keys": cache_service.keys()}


@router.post("/cache/clear", dependencies=[Depends(require_permission("can_manage_system"))])
async def clear_cache():
    cleared = len(cache_service)
    cache_service.clear()
    return {"cleared": cleared}


@router.get("/logs", dependencies=[Depends(require_permission("can_manage_system"))])
async def recent_logs(limit: int = 50):
    """Most recent buffered and ingested metrics and errors, newest first."""
    return {
        "server_metrics": [asdict(m) for m in monitoring.get_metrics()[-limit:]][::-1],
        "server_errors": [asdict(e) for e in monitoring.get_errors()[-limit:]][::-1],
        "client_metrics": [m.model_dump() for m in list(received_metrics)[-limit:]][::-1],
        "client_errors": [e.model_dump() for e in list(received_errors)[-limit:]][::-1],
    }
