from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from coffee_demo.config import Settings
from coffee_demo.db.session import Database
from coffee_demo.observability.metrics import MetricsEmitter
from coffee_demo.observability.tracing import Tracing


@dataclass
class AppServices:
    """Long-lived collaborators shared by the pipeline and the handlers.

    Populated by the application lifespan, or up front by tests.
    """

    settings: Settings
    database: Database | None = None
    tracing: Tracing | None = None
    emitter: MetricsEmitter | None = None

    @property
    def ready(self) -> bool:
        return self.database is not None and self.tracing is not None and self.emitter is not None


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_database(request: Request) -> Database:
    database = get_services(request).database
    if database is None:
        raise RuntimeError("database is not initialized")
    return database


def get_emitter(request: Request) -> MetricsEmitter:
    emitter = get_services(request).emitter
    if emitter is None:
        raise RuntimeError("metrics emitter is not initialized")
    return emitter
