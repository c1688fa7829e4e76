"""
Health route.

Returns the composite report directly (no envelope) so load balancers can
read ``status``; the HTTP status is 503 when the engine is unhealthy.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from hybrid_srs.api import get_container

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(detailed: bool = Query(False), container=Depends(get_container)):
    report = await container.health.check()
    content = report.to_dict(detailed=detailed)
    if detailed:
        content["features"] = container.features.model_dump()
    return JSONResponse(status_code=report.http_status, content=content)
