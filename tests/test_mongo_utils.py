import pytest

from session_store import mongo_utils
from session_store.mongo_utils import MongoConfig, create_client, drop_cached_client


class _RecordingClient:
    def __init__(self, uri, **kwargs):
        self.uri = uri
        self.kwargs = kwargs


@pytest.fixture
def clients(monkeypatch):
    created = []

    def _factory(uri, **kwargs):
        client = _RecordingClient(uri, **kwargs)
        created.append(client)
        return client

    monkeypatch.setattr(mongo_utils, "_CLIENT_CACHE", {})
    monkeypatch.setattr(mongo_utils, "MongoClient", _factory)
    return created


def test_create_client_passes_timeouts_and_tz_aware(clients):
    config = MongoConfig(
        uri="mongodb://localhost:27017",
        connect_timeout_ms=1500,
        query_timeout_ms=9000,
        max_pool_size=7,
    )

    client = create_client(config)

    assert client.uri == "mongodb://localhost:27017"
    assert client.kwargs["serverSelectionTimeoutMS"] == 1500
    assert client.kwargs["connectTimeoutMS"] == 1500
    assert client.kwargs["socketTimeoutMS"] == 9000
    assert client.kwargs["maxPoolSize"] == 7
    assert client.kwargs["tz_aware"] is True


def test_create_client_reuses_cached_client(clients):
    config = MongoConfig(uri="mongodb://localhost:27017")

    first = create_client(config)
    second = create_client(MongoConfig(uri="mongodb://localhost:27017"))

    assert first is second
    assert len(clients) == 1


def test_different_settings_get_separate_clients(clients):
    a = create_client(MongoConfig(uri="mongodb://localhost:27017", max_pool_size=5))
    b = create_client(MongoConfig(uri="mongodb://localhost:27017", max_pool_size=6))

    assert a is not b
    assert len(clients) == 2


def test_drop_cached_client_forces_a_new_client(clients):
    config = MongoConfig(uri="mongodb://localhost:27017")

    first = create_client(config)
    drop_cached_client(config)
    second = create_client(config)

    assert first is not second
    assert len(clients) == 2


def test_real_client_is_lazy_and_tz_aware(monkeypatch):
    monkeypatch.setattr(mongo_utils, "_CLIENT_CACHE", {})
    config = MongoConfig(uri="mongodb://localhost:27017", connect_timeout_ms=1500, max_pool_size=7)

    client = create_client(config)
    try:
        assert client.codec_options.tz_aware is True
        assert client.options.pool_options.max_pool_size == 7
    finally:
        drop_cached_client(config)
        client.close()
