from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime, TypeDecorator

from ledgersync.utils.time import UTC, ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes on top of a naive DateTime column.

    Naive values passed in are taken as UTC; values read back always carry tzinfo=UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return ensure_utc(value)
