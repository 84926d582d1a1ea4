from __future__ import annotations

from fastapi import APIRouter, Depends

from coffee_demo.db.session import Database
from coffee_demo.models.schemas import CoffeeOrderOut, CreateCoffeeOrder
from coffee_demo.observability.metrics import MetricsEmitter
from coffee_demo.services.container import get_database, get_emitter
from coffee_demo.services.order_service import get_order, place_order

router = APIRouter(prefix="/coffee", tags=["coffee"])


@router.get("/{order_id}", response_model=CoffeeOrderOut)
def get_coffee_order(order_id: int, database: Database = Depends(get_database)) -> CoffeeOrderOut:
    return get_order(database, order_id)


@router.post("", response_model=CoffeeOrderOut, status_code=201)
def create_coffee_order(
    payload: CreateCoffeeOrder,
    database: Database = Depends(get_database),
    emitter: MetricsEmitter = Depends(get_emitter),
) -> CoffeeOrderOut:
    return place_order(database, emitter, payload)
