from sqlalchemy.types import DateTime, TypeDecorator

from nudge.utils.timezone import to_utc_aware


class UTCDateTime(TypeDecorator):
    """Timestamp column that always round-trips as a UTC-aware datetime.

    PostgreSQL keeps the offset in timestamptz; SQLite drops it. Normalising on
    both sides keeps comparisons in Python dialect-independent.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = to_utc_aware(value)
        if value is not None and dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return to_utc_aware(value)
