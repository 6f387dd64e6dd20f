"""
Store Utilities - MongoDB connection configuration and client caching
"""
import os
import logging
import threading
from typing import Dict, Optional
from dataclasses import dataclass

from pymongo import MongoClient

from session_analyzer.services.runtime import log_event

logger = logging.getLogger("mongo_utils")


# Global client cache keyed by connection URI
_CLIENT_CACHE: Dict[str, MongoClient] = {}
_CLIENT_CACHE_LOCK = threading.RLock()


@dataclass
class MongoConfig:
    """MongoDB connection configuration"""
    uri: str
    database: str = "rating-analyzer"
    collection: str = "sessions"

    # Timeout settings (in milliseconds)
    connect_timeout_ms: int = 10000
    query_timeout_ms: int = 30000

    # Pool settings
    max_pool_size: int = 20

    @classmethod
    def from_env(cls) -> "MongoConfig":
        uri = (os.getenv("MONGODB_URI") or "").strip()
        if not uri:
            raise ValueError("MONGODB_URI is not set. Add it to the environment or .env file.")
        return cls(
            uri=uri,
            database=os.getenv("MONGODB_DB_NAME", "rating-analyzer"),
            collection=os.getenv("MONGODB_COLLECTION", "sessions"),
            connect_timeout_ms=max(500, int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))),
            query_timeout_ms=max(1000, int(os.getenv("MONGODB_QUERY_TIMEOUT_MS", "30000"))),
            max_pool_size=max(1, int(os.getenv("MONGODB_MAX_POOL_SIZE", "20"))),
        )

    @property
    def cache_key(self) -> str:
        return f"{self.uri}|{self.connect_timeout_ms}|{self.query_timeout_ms}|{self.max_pool_size}"


def _get_cached_client(cache_key: str) -> Optional[MongoClient]:
    with _CLIENT_CACHE_LOCK:
        return _CLIENT_CACHE.get(cache_key)


def _set_cached_client(cache_key: str, client: MongoClient) -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE[cache_key] = client


def drop_cached_client(config: MongoConfig) -> None:
    """Forget a cached client, e.g. after it has been closed."""
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.pop(config.cache_key, None)


def create_client(config: MongoConfig) -> MongoClient:
    """
    Create a pooled MongoClient with connection and query timeouts.
    Clients are cached by configuration so reconnects reuse the same pool.

    MongoClient is thread-safe; one instance serves every request.
    """
    cached = _get_cached_client(config.cache_key)
    if cached is not None:
        log_event(logger, logging.DEBUG, "mongo_client_cache_hit", cache_key_hash=hash(config.cache_key))
        return cached

    client = MongoClient(
        config.uri,
        serverSelectionTimeoutMS=config.connect_timeout_ms,
        connectTimeoutMS=config.connect_timeout_ms,
        socketTimeoutMS=config.query_timeout_ms,
        maxPoolSize=config.max_pool_size,
        tz_aware=True,
        appname="session-analyzer",
    )
    _set_cached_client(config.cache_key, client)
    log_event(logger, logging.INFO, "mongo_client_created", cache_key_hash=hash(config.cache_key))
    return client


def ping(client: MongoClient) -> None:
    """Round-trip a ping; raises the driver error on failure."""
    client.admin.command("ping")
