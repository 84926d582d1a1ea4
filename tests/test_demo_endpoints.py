from datetime import datetime, timedelta
from time import perf_counter

from coffee_demo.api import demo
from coffee_demo.observability.metrics import CREATED_COFFEE_ORDERS


ORDER = {"user_name": "Ada", "coffee_type": "latte"}


async def test_tom_answers_after_three_seconds(api_client) -> None:
    start = perf_counter()
    resp = await api_client.post("/make-coffee-tom", json=ORDER)
    elapsed = perf_counter() - start

    assert resp.status_code == 201
    assert resp.json()["coffee_type"] == "latte"
    assert elapsed >= 3.0


async def test_honza_always_fails_and_never_persists(api_client) -> None:
    resp = await api_client.post("/make-coffee-honza", json=ORDER)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Honza's endpoint is broken"}

    # ids are dense, so the next successful insert proves nothing was written.
    created = await api_client.post("/coffee", json=ORDER)
    assert created.json()["id"] == 1


async def test_marek_allocates_memory_then_persists(api_client, monkeypatch) -> None:
    monkeypatch.setattr(demo, "MAREK_ALLOCATION_MB", 2)
    monkeypatch.setattr(demo, "MAREK_PAUSE_SECONDS", 0.0)

    resp = await api_client.post("/make-coffee-marek", json=ORDER)
    assert resp.status_code == 201
    assert resp.json()["user_name"] == "Ada"


async def test_viking_performs_extra_reads_before_insert(api_client, span_exporter) -> None:
    resp = await api_client.post("/make-coffee-viking", json=ORDER)
    assert resp.status_code == 201

    spans = span_exporter.get_finished_spans()
    request_span = next(span for span in spans if span.name == "POST /make-coffee-viking")
    trace_spans = [span for span in spans if span.context.trace_id == request_span.context.trace_id]

    reads = [span for span in trace_spans if span.name == "get_order"]
    inserts = [span for span in trace_spans if span.name == "create_order"]
    assert len(reads) == demo.VIKING_EXTRA_READS
    assert len(inserts) == 1
    assert max(span.end_time for span in reads) <= inserts[0].start_time


async def test_matus_always_stores_borovicka(api_client) -> None:
    resp = await api_client.post("/make-coffee-matus", json={"user_name": "Ada", "coffee_type": "cappuccino"})
    assert resp.status_code == 201
    order = resp.json()
    assert order["coffee_type"] == "borovicka"

    stored = await api_client.get(f"/coffee/{order['id']}")
    assert stored.json()["coffee_type"] == "borovicka"


async def test_mila_stores_created_at_in_the_future(api_client) -> None:
    regular = await api_client.post("/coffee", json=ORDER)
    mila = await api_client.post("/make-coffee-mila", json=ORDER)
    assert mila.status_code == 201

    regular_at = datetime.fromisoformat(regular.json()["created_at"])
    mila_at = datetime.fromisoformat(mila.json()["created_at"])
    assert mila_at - regular_at > timedelta(hours=1)

    stored = await api_client.get(f"/coffee/{mila.json()['id']}")
    assert stored.json()["created_at"] == mila.json()["created_at"]


async def test_demo_creations_emit_order_created_metrics(api_client, emitter, metrics_sink) -> None:
    await api_client.post("/make-coffee-matus", json=ORDER)
    await api_client.post("/make-coffee-honza", json=ORDER)
    emitter.flush()

    created = metrics_sink.points_named(CREATED_COFFEE_ORDERS)
    assert len(created) == 1
    assert created[0].dimensions == {"UserName": "Ada", "CoffeeType": "borovicka"}
