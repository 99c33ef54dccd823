"""Column types and defaults shared by the invoice and billing tables."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import String, TypeDecorator
from sqlalchemy.engine import Dialect


class UUIDType(TypeDecorator[uuid.UUID]):
    """UUID stored as its 36-character text form on every dialect.

    Matches the ``VARCHAR(36)`` columns the migrations create; values always
    come back as ``uuid.UUID``.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        return str(value if isinstance(value, uuid.UUID) else uuid.UUID(str(value)))

    def process_result_value(self, value: Any, dialect: Dialect) -> uuid.UUID | None:
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


# Issuing organization for invoices written without an X-Organization-Id
# header. Organization ids scope invoice numbers and reads; they are not
# an authentication boundary.
DEFAULT_ORGANIZATION_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def generate_uuid() -> uuid.UUID:
    return uuid.uuid4()


def utc_now() -> datetime:
    """Aware UTC now; the default clock for the store, scheduler and reconciler."""
    return datetime.now(UTC)
