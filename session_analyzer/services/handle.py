"""
Process-wide service handle.

open_services() wires the query generator, result analyzer and Mongo service
together; ensure_ready() initializes them exactly once. Requests that arrive
while initialization is running block on the same lock and then observe its
outcome, so setup never runs twice and no request sees a half-built service.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from session_analyzer.services.mongo_service import DEFAULT_MAX_RETRIES, MongoService
from session_analyzer.services.query_generator import QueryGenerator
from session_analyzer.services.result_analyzer import ResultAnalyzer
from session_analyzer.services.runtime import log_event

logger = logging.getLogger("service_handle")


def _split_csv(raw: str) -> List[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


@dataclass
class AppSettings:
    max_attempts: int = DEFAULT_MAX_RETRIES
    request_timeout_s: float = 60.0
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    preload_services: bool = True

    @classmethod
    def from_env(cls) -> "AppSettings":
        origins = _split_csv(os.getenv("CORS_ORIGINS", ""))
        return cls(
            max_attempts=max(1, int(os.getenv("QUERY_MAX_ATTEMPTS", str(DEFAULT_MAX_RETRIES)))),
            request_timeout_s=max(5.0, float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60"))),
            cors_origins=origins or cls().cors_origins,
            preload_services=os.getenv("PRELOAD_SERVICES", "true").lower() in {"1", "true", "yes", "on"},
        )


class ServiceHandle:
    def __init__(
        self,
        query_generator: QueryGenerator,
        result_analyzer: ResultAnalyzer,
        mongo_service: MongoService,
        settings: Optional[AppSettings] = None,
    ):
        self.query_generator = query_generator
        self.result_analyzer = result_analyzer
        self.mongo_service = mongo_service
        self.settings = settings or AppSettings()
        self._init_lock = threading.Lock()
        self._ready = False
        self._init_error: Optional[BaseException] = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    def ensure_ready(self) -> "ServiceHandle":
        if self._ready:
            return self
        with self._init_lock:
            if self._ready:
                return self
            if self._init_error is not None:
                raise self._init_error
            logger.info("Initializing services...")
            try:
                self.query_generator.initialize()
                self.result_analyzer.initialize()
                self.mongo_service.connect()
            except Exception as exc:
                self._init_error = exc
                log_event(logger, logging.ERROR, "service_init_failed", error=str(exc))
                raise
            self._ready = True
            log_event(logger, logging.INFO, "service_init_complete", model=self.query_generator.model_name)
        return self

    def close(self) -> None:
        self.mongo_service.disconnect()


def open_services(settings: Optional[AppSettings] = None) -> ServiceHandle:
    """Build the default handle from the environment. Nothing connects until ensure_ready()."""
    query_generator = QueryGenerator()
    return ServiceHandle(
        query_generator=query_generator,
        result_analyzer=ResultAnalyzer(),
        mongo_service=MongoService(query_generator=query_generator),
        settings=settings or AppSettings.from_env(),
    )
