"""Error taxonomy shared by the data layer, handlers and startup code.

Every error carries a short client-facing ``message``; the underlying cause is
chained with ``raise ... from`` and only ever shows up in logs and spans.
"""

from __future__ import annotations


class CoffeeDemoError(Exception):
    """Base class for all service errors."""

    error_type = "application_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(CoffeeDemoError):
    """The request body or path could not be decoded."""


class NotFoundError(CoffeeDemoError):
    """No coffee order exists with the requested id."""


class DuplicateError(CoffeeDemoError):
    """The store rejected a row because of a uniqueness constraint."""


class StoreConnectionError(CoffeeDemoError):
    """The relational store could not be reached."""


class QueryError(CoffeeDemoError):
    """Any other failure reported by the store."""


class SchemaError(CoffeeDemoError):
    """The coffee order table could not be created."""


class InitError(CoffeeDemoError):
    """A startup step failed; the process must not start serving."""
