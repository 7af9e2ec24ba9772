"""Per-operation log context (operation ID and location key) via contextvars."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")
location_key_var: ContextVar[str] = ContextVar("location_key", default="")


def generate_operation_id() -> str:
    """Return a new 32-character hex operation ID."""
    return uuid.uuid4().hex


def get_operation_id() -> str:
    return operation_id_var.get()


def get_location_key() -> str:
    return location_key_var.get()


@contextmanager
def operation_context(location_key: str) -> Iterator[str]:
    """Bind an operation ID and location key for the duration of one lookup.

    An operation ID already bound by the caller is reused so that nested
    lookups share one correlation ID.
    """
    operation_id = operation_id_var.get() or generate_operation_id()
    op_token = operation_id_var.set(operation_id)
    key_token = location_key_var.set(location_key)
    try:
        yield operation_id
    finally:
        location_key_var.reset(key_token)
        operation_id_var.reset(op_token)
