"""Database module for booking money fields and the settlement audit trail."""

from .models import (
    Booking,
    AuditEntry,
    Base,
    PaymentStatus,
    AuditAction,
    SETTLED_STATUSES,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    make_session_factory,
    get_async_session_factory,
    get_db_context,
)
from .repository import (
    BookingRepository,
    AuditEntryRepository,
    REQUIRES_MANUAL_PROCESSING,
)

__all__ = [
    # Models
    "Booking",
    "AuditEntry",
    "Base",
    "PaymentStatus",
    "AuditAction",
    "SETTLED_STATUSES",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "make_session_factory",
    "get_async_session_factory",
    "get_db_context",
    # Repositories
    "BookingRepository",
    "AuditEntryRepository",
    "REQUIRES_MANUAL_PROCESSING",
]
