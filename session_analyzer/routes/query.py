"""Natural-language query routes."""
import base64
import logging
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import Binary, Decimal128, ObjectId, Regex, Timestamp
from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from session_analyzer.routes.deps import get_services
from session_analyzer.services.errors import is_quota_error
from session_analyzer.services.handle import ServiceHandle
from session_analyzer.services.runtime import log_event, run_with_timeout

router = APIRouter(prefix="/api", tags=["query"])
logger = logging.getLogger("query_route")

# Result sets larger than MAX_FULL_RESULTS are cut to TRUNCATED_RESULTS records.
MAX_FULL_RESULTS = 200
TRUNCATED_RESULTS = 50


class QueryRequest(BaseModel):
    query: Optional[str] = None


def shape_results(results: List[Any]) -> List[Any]:
    if len(results) <= MAX_FULL_RESULTS:
        return results
    return results[:TRUNCATED_RESULTS]


# BSON values pymongo hands back that the default JSON encoder rejects.
BSON_ENCODERS = {
    ObjectId: str,
    Decimal128: lambda d: float(d.to_decimal()),
    Regex: lambda r: r.pattern,
    Timestamp: lambda t: t.as_datetime().isoformat(),
    Binary: lambda b: base64.b64encode(bytes(b)).decode("ascii"),
    bytes: lambda b: base64.b64encode(b).decode("ascii"),
}


def to_jsonable(value: Any) -> Any:
    return jsonable_encoder(value, custom_encoder=BSON_ENCODERS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(exc: BaseException) -> JSONResponse:
    message = str(exc) or exc.__class__.__name__
    if is_quota_error(message):
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "LLM quota exceeded",
                "details": (
                    "The LLM provider rejected the request because a rate limit or usage quota "
                    "was reached. Wait before retrying or raise the plan limits."
                ),
                "quotaInfo": {"providerMessage": message, "currentTime": _now_iso()},
            },
        )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": message or "An error occurred while processing your query"},
    )


def _process_query(services: ServiceHandle, question: str) -> Dict[str, Any]:
    services.ensure_ready()
    t_start = time.perf_counter()

    mongo_query = services.query_generator.generate_query(question)
    t_generated = time.perf_counter()

    results = services.mongo_service.execute_query_with_retry(
        mongo_query,
        question,
        max_retries=services.settings.max_attempts,
    )
    t_executed = time.perf_counter()

    analysis = services.result_analyzer.analyze_results(question, results)
    t_done = time.perf_counter()

    log_event(
        logger,
        logging.INFO,
        "query_processed",
        rows=len(results),
        generation_ms=round((t_generated - t_start) * 1000, 2),
        execution_ms=round((t_executed - t_generated) * 1000, 2),
        analysis_ms=round((t_done - t_executed) * 1000, 2),
    )
    return {
        "success": True,
        "query": question,
        "resultCount": len(results),
        "analysis": analysis,
        "rawResults": to_jsonable(shape_results(results)),
        "executionTime": _now_iso(),
        "model": services.query_generator.model_name,
    }


@router.post("/query")
def run_query(req: QueryRequest, services: ServiceHandle = Depends(get_services)):
    question = (req.query or "").strip()
    if not question:
        return JSONResponse(status_code=400, content={"success": False, "error": "Query is required"})

    log_event(logger, logging.INFO, "query_received", question=question)
    try:
        return run_with_timeout(
            lambda: _process_query(services, question),
            timeout_s=services.settings.request_timeout_s,
        )
    except FuturesTimeoutError:
        log_event(logger, logging.WARNING, "query_timeout", timeout_s=services.settings.request_timeout_s)
        return JSONResponse(
            status_code=504,
            content={
                "success": False,
                "error": f"Query processing exceeded {services.settings.request_timeout_s:g} seconds",
            },
        )
    except Exception as exc:
        log_event(logger, logging.ERROR, "query_failed", error=str(exc), error_type=exc.__class__.__name__)
        return error_response(exc)


@router.get("/test-llm")
def test_llm(services: ServiceHandle = Depends(get_services)):
    try:
        services.ensure_ready()
        return {
            "success": True,
            "llmTests": {
                "queryGenerator": services.query_generator.test_connection(),
                "resultAnalyzer": services.result_analyzer.test_connection(),
            },
            "model": services.query_generator.model_name,
        }
    except Exception as exc:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "LLM test failed", "details": str(exc)},
        )
