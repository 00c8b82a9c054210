"""
UTC time helpers shared by quota windows, price snapshots and alert triggers.

All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minute_start(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def day_start(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)
