"""Time utilities."""
from datetime import UTC, datetime, timedelta, timezone

# Vietnamese gateways express timestamps in local time (UTC+7).
GATEWAY_TZ = timezone(timedelta(hours=7))


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def gateway_timestamp(value: datetime) -> str:
    """Format ``value`` as ``yyyyMMddHHmmss`` in gateway local time."""

    return ensure_aware(value).astimezone(GATEWAY_TZ).strftime("%Y%m%d%H%M%S")


def epoch_millis(value: datetime) -> int:
    return int(ensure_aware(value).timestamp() * 1000)


__all__ = ["utcnow", "ensure_aware", "gateway_timestamp", "epoch_millis", "GATEWAY_TZ"]
