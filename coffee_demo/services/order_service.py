from __future__ import annotations

from datetime import datetime

import structlog

from coffee_demo.db.session import Database
from coffee_demo.models.schemas import CoffeeOrderOut, CreateCoffeeOrder
from coffee_demo.observability.metrics import MetricsEmitter, order_created_metrics


logger = structlog.get_logger("orders")


def get_order(database: Database, order_id: int) -> CoffeeOrderOut:
    return CoffeeOrderOut.model_validate(database.get_order(order_id))


def place_order(
    database: Database,
    emitter: MetricsEmitter,
    payload: CreateCoffeeOrder,
    *,
    created_at: datetime | None = None,
) -> CoffeeOrderOut:
    """Persist an order and report it as a business event.

    ``created_at`` overrides the store's default timestamp.
    """

    if created_at is None:
        order = database.create_order(payload)
    else:
        order = database.create_order_at(payload, created_at)

    emitter.emit(*order_created_metrics(order.user_name, order.coffee_type))
    logger.info(
        "coffee_order_created",
        order_id=order.id,
        user_name=order.user_name,
        coffee_type=order.coffee_type,
    )
    return CoffeeOrderOut.model_validate(order)
