"""
FastAPI backend for the session rating analyzer.
Run with: uvicorn session_analyzer.main:app --reload --port 3000
"""
import os
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from session_analyzer.routes.query import router as query_router
from session_analyzer.routes.database import router as db_router
from session_analyzer.routes.deps import get_services
from session_analyzer.services.handle import open_services
from session_analyzer.services.runtime import set_request_id, clear_context, shutdown_shared_executor

app = FastAPI(title="Session Analyzer API", version="1.0.0")
app.state.services = open_services()
logger = logging.getLogger("session_analyzer")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("startup")
def initialize_services():
    """Connect to MongoDB and set up the LLM clients before the first request."""
    if not app.state.services.settings.preload_services:
        return
    try:
        app.state.services.ensure_ready()
    except Exception:
        # Requests report the stored initialization error; keep the API up.
        logger.exception("startup_initialization_failed")


@app.on_event("shutdown")
def shutdown_services():
    app.state.services.close()
    shutdown_shared_executor(wait=False)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=app.state.services.settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query_router)
app.include_router(db_router)


@app.get("/api/health")
def health(request: Request):
    services = get_services(request)
    try:
        services.ensure_ready()
        record_count = services.mongo_service.test_connection()
        return {
            "success": True,
            "message": "Server and all services are healthy",
            "details": {
                "database": {
                    "connected": services.mongo_service.is_connected,
                    "recordCount": record_count,
                },
                "llm": {
                    "queryGenerator": services.query_generator.test_connection(),
                    "resultAnalyzer": services.result_analyzer.test_connection(),
                },
            },
            "model": services.query_generator.model_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Health check failed", "details": str(exc)},
        )
