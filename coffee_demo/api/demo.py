"""Deliberately misbehaving order endpoints.

Each one exhibits a single failure mode for the dashboards to surface:
latency, hard failures, memory pressure, chatty queries, silent data
corruption and timestamps in the future. Their behavior is the point;
do not fix them.
"""

from __future__ import annotations

import time
from contextlib import suppress
from datetime import datetime, timedelta, timezone

import structlog
from fastapi import APIRouter, Depends

from coffee_demo.db.session import Database
from coffee_demo.errors import CoffeeDemoError
from coffee_demo.models.schemas import CoffeeOrderOut, CreateCoffeeOrder
from coffee_demo.observability.metrics import MetricsEmitter
from coffee_demo.services.container import get_database, get_emitter
from coffee_demo.services.order_service import place_order

router = APIRouter(tags=["demo"])
logger = structlog.get_logger("demo")

TOM_DELAY_SECONDS = 3.0
MAREK_ALLOCATION_MB = 250
MAREK_PAUSE_SECONDS = 1.0
VIKING_EXTRA_READS = 10
MATUS_COFFEE_TYPE = "borovicka"
MILA_FULFILLMENT_DELAY = timedelta(hours=2)

_MIB = 1024 * 1024


@router.post("/make-coffee-tom", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_tom(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    time.sleep(TOM_DELAY_SECONDS)
    return place_order(database, emitter, payload)


@router.post("/make-coffee-honza", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_honza(payload: CreateCoffeeOrder) -> CoffeeOrderOut:
    _ = payload
    raise CoffeeDemoError("Honza's endpoint is broken") from RuntimeError("intentional failure")


@router.post("/make-coffee-marek", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_marek(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    # Filled rather than zeroed so the pages are actually resident.
    scratch = [bytes([index % 256]) * _MIB for index in range(MAREK_ALLOCATION_MB)]
    logger.warning("scratch_memory_allocated", megabytes=len(scratch))

    time.sleep(MAREK_PAUSE_SECONDS)

    order = place_order(database, emitter, payload)
    del scratch
    return order


@router.post("/make-coffee-viking", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_viking(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    for order_id in range(VIKING_EXTRA_READS):
        # Results and failures of these reads are discarded.
        with suppress(CoffeeDemoError):
            database.get_order(order_id)

    return place_order(database, emitter, payload)


@router.post("/make-coffee-matus", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_matus(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    replaced = CreateCoffeeOrder(user_name=payload.user_name, coffee_type=MATUS_COFFEE_TYPE)
    return place_order(database, emitter, replaced)


@router.post("/make-coffee-mila", response_model=CoffeeOrderOut, status_code=201)
def make_coffee_mila(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    created_at = datetime.now(timezone.utc) + MILA_FULFILLMENT_DELAY
    return place_order(database, emitter, payload, created_at=created_at)
