from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from coffee_demo.config import get_settings
from coffee_demo.db.session import Database
from coffee_demo.main import create_app
from coffee_demo.observability.metrics import InMemoryMetricsSink, MetricsEmitter
from coffee_demo.observability.tracing import Tracing, init_tracing
from coffee_demo.services.container import AppServices


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'coffee.db'}")
    monkeypatch.setenv("TRACING_ENABLED", "false")
    monkeypatch.setenv("METRICS_ENABLED", "false")
    monkeypatch.setenv("AWS_REGION", "eu-test-1")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracing(span_exporter: InMemorySpanExporter) -> Iterator[Tracing]:
    handle = init_tracing("coffee-test", "0.0.0", "test", region="eu-test-1", exporter=span_exporter)
    yield handle
    handle.shutdown()


@pytest.fixture
def database(tracing: Tracing) -> Iterator[Database]:
    db = Database.open(get_settings().database_url, tracing)
    db.ensure_schema()
    yield db
    db.close()


@pytest.fixture
def metrics_sink() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def emitter(metrics_sink: InMemoryMetricsSink) -> Iterator[MetricsEmitter]:
    metrics_emitter = MetricsEmitter(metrics_sink, workers=2, queue_size=1000)
    metrics_emitter.start()
    yield metrics_emitter
    metrics_emitter.shutdown()


@pytest.fixture
def services(database: Database, tracing: Tracing, emitter: MetricsEmitter) -> AppServices:
    return AppServices(settings=get_settings(), database=database, tracing=tracing, emitter=emitter)


@pytest.fixture
def app(services: AppServices) -> FastAPI:
    return create_app(services=services)


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
