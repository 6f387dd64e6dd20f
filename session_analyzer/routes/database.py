"""Database inspection routes."""
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from session_analyzer.routes.deps import get_services
from session_analyzer.routes.query import to_jsonable
from session_analyzer.services.handle import ServiceHandle
from session_analyzer.services.runtime import log_event

router = APIRouter(prefix="/api/db", tags=["database"])
logger = logging.getLogger("database_route")


@router.get("/sample")
def sample_data(
    limit: int = Query(3, ge=1, le=50),
    services: ServiceHandle = Depends(get_services),
):
    try:
        services.ensure_ready()
        records = services.mongo_service.get_sample_data(limit)
        return {"success": True, "count": len(records), "records": to_jsonable(records)}
    except Exception as exc:
        log_event(logger, logging.ERROR, "db_sample_error", error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


@router.get("/stats")
def collection_stats(services: ServiceHandle = Depends(get_services)):
    try:
        services.ensure_ready()
        return {"success": True, "stats": services.mongo_service.get_collection_stats()}
    except Exception as exc:
        log_event(logger, logging.ERROR, "db_stats_error", error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
