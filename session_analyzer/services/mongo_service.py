"""
Mongo Service - connection lifecycle and pipeline execution for the sessions collection.

execute_query_with_retry() is the self-repair loop: a pipeline the database
rejects is handed back to the query generator together with the error text,
and the corrected pipeline is tried next. Attempts run strictly one after
another because each one depends on the previous error.
"""
import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from bson.errors import BSONError
from pymongo.errors import PyMongoError

from session_store.mongo_utils import MongoConfig, create_client, drop_cached_client, ping
from session_analyzer.services.errors import DatabaseConnectionError, ExecutionError, RepairError
from session_analyzer.services.runtime import log_event
from session_analyzer.services.temporal import dates_to_iso, normalize_dates

logger = logging.getLogger("mongo_service")

DEFAULT_MAX_RETRIES = 2

# Errors raised by the driver for a bad pipeline: server-side rejections plus
# client-side encoding failures.
STORE_ERRORS = (PyMongoError, BSONError, TypeError, ValueError)


class MongoService:
    def __init__(
        self,
        config: Optional[MongoConfig] = None,
        query_generator=None,
        client_factory: Callable[[MongoConfig], Any] = create_client,
    ):
        self.config = config
        self.query_generator = query_generator
        self._client_factory = client_factory
        self._connect_lock = threading.Lock()
        self.client = None
        self.db = None
        self.collection = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --- lifecycle ---

    def connect(self) -> None:
        if self._connected:
            return
        with self._connect_lock:
            if self._connected:
                return
            try:
                self.config = self.config or MongoConfig.from_env()
                logger.info("Connecting to MongoDB...")
                self.client = self._client_factory(self.config)
                ping(self.client)
                self.db = self.client[self.config.database]
                self.collection = self.db[self.config.collection]
                count = self.collection.count_documents({})
                self._connected = True
            except Exception as exc:
                log_event(logger, logging.ERROR, "mongo_connect_failed", error=str(exc))
                self._reset(close=True)
                raise DatabaseConnectionError(f"Database connection failed: {exc}") from exc

        log_event(
            logger,
            logging.INFO,
            "mongo_connected",
            database=self.config.database,
            collection=self.config.collection,
            document_count=count,
        )

    def _reset(self, close: bool) -> None:
        client = self.client
        self.client = None
        self.db = None
        self.collection = None
        self._connected = False
        if self.config is not None:
            drop_cached_client(self.config)
        if close and client is not None:
            try:
                client.close()
            except Exception:
                logger.warning("failed_to_close_mongo_client", exc_info=True)

    def disconnect(self) -> None:
        with self._connect_lock:
            if self.client is None:
                return
            client = self.client
            self._reset(close=False)
            try:
                client.close()
                logger.info("MongoDB disconnected")
            except Exception:
                logger.error("Error disconnecting from MongoDB", exc_info=True)

    def _require_connection(self) -> None:
        if not self._connected or self.collection is None:
            raise DatabaseConnectionError("Database not connected")

    def test_connection(self) -> int:
        self._require_connection()
        try:
            return self.collection.count_documents({})
        except STORE_ERRORS as exc:
            raise DatabaseConnectionError(f"Database test failed: {exc}") from exc

    # --- execution ---

    def _aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        processed = normalize_dates(copy.deepcopy(pipeline))
        return list(self.collection.aggregate(processed))

    def execute_query_with_retry(
        self,
        mongo_query: List[Dict[str, Any]],
        original_query: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> List[Dict[str, Any]]:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._require_connection()

        current_query = mongo_query
        for attempt in range(max_retries):
            log_event(
                logger,
                logging.INFO,
                "query_attempt",
                attempt=attempt + 1,
                max_attempts=max_retries,
                pipeline=dates_to_iso(current_query),
            )
            started = time.perf_counter()
            try:
                results = self._aggregate(current_query)
            except STORE_ERRORS as exc:
                error_text = str(exc)
                log_event(
                    logger,
                    logging.WARNING,
                    "query_attempt_failed",
                    attempt=attempt + 1,
                    max_attempts=max_retries,
                    error=error_text,
                )
                if attempt == max_retries - 1:
                    raise ExecutionError(
                        f"Database query failed after {max_retries} attempts: {error_text}",
                        attempts=max_retries,
                        last_error=error_text,
                        query=current_query,
                        original_query=original_query,
                    ) from exc
                if self.query_generator is None:
                    raise RepairError(
                        "Query could not be fixed: no query generator configured",
                        user_query=original_query,
                        error_message=error_text,
                        failed_query=current_query,
                    ) from exc
                current_query = self.query_generator.fix_query(original_query, error_text, current_query)
                logger.info("Query fixed, retrying...")
                continue

            log_event(
                logger,
                logging.INFO,
                "query_executed",
                attempt=attempt + 1,
                rows=len(results),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return results
        raise AssertionError("retry loop exited without a result")

    def execute_raw_query(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Single attempt, no repair. For trusted, hand-built pipelines."""
        self._require_connection()
        try:
            return self._aggregate(pipeline)
        except STORE_ERRORS as exc:
            raise ExecutionError(
                f"Raw query execution failed: {exc}",
                attempts=1,
                last_error=str(exc),
                query=pipeline,
            ) from exc

    def get_sample_data(self, limit: int = 3) -> List[Dict[str, Any]]:
        self._require_connection()
        try:
            return list(self.collection.find({}).limit(max(1, int(limit))))
        except STORE_ERRORS as exc:
            raise ExecutionError(f"Failed to get sample data: {exc}", attempts=1, last_error=str(exc)) from exc

    def get_collection_stats(self) -> Dict[str, Any]:
        self._require_connection()
        try:
            stats = self.db.command("collStats", self.config.collection)
        except STORE_ERRORS as exc:
            raise ExecutionError(f"Failed to get collection stats: {exc}", attempts=1, last_error=str(exc)) from exc
        return {
            "documentCount": stats.get("count"),
            "avgDocumentSize": stats.get("avgObjSize"),
            "totalSize": stats.get("size"),
            "storageSize": stats.get("storageSize"),
        }
