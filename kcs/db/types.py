"""
Column types that behave the same on Postgres and SQLite.

Orders, stories and assets are keyed by UUID. Postgres stores them natively;
the SQLite engine used by the test suite stores the canonical 36-char string.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """UUID column: native on Postgres, CHAR(36) elsewhere. Always returns `uuid.UUID`."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if not isinstance(value, uuid.UUID):
            try:
                value = uuid.UUID(str(value))
            except ValueError as exc:
                raise ValueError(f"Invalid UUID value: {value!r}") from exc
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value: Any, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))
