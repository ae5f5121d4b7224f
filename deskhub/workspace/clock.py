"""Time sources and timestamp helpers."""

from __future__ import annotations

import datetime as dt
from typing import Protocol

from .exceptions import ValidationError


class Clock(Protocol):
    def now(self) -> dt.datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)


class FixedClock:
    """A clock that only moves when told to. Used by the tests."""

    def __init__(self, current: dt.datetime | str) -> None:
        self.current = parse_timestamp(current)

    def now(self) -> dt.datetime:
        return self.current

    def set(self, current: dt.datetime | str) -> None:
        self.current = parse_timestamp(current)

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current = self.current + dt.timedelta(**kwargs)
        return self.current


def parse_timestamp(value: dt.datetime | str | None, *, field: str = "timestamp") -> dt.datetime:
    """Return an aware UTC datetime for ``value``.

    Strings may end in ``Z``. Naive values are taken to be UTC already.
    """

    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid {field}: {value}") from exc
    else:
        raise ValidationError(f"Invalid {field}: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def format_timestamp(value: dt.datetime | str) -> str:
    # Fixed width so that string comparison in SQL matches time order.
    return parse_timestamp(value).isoformat(timespec="seconds")


def normalize_timestamp(value: dt.datetime | str | None, *, field: str = "timestamp") -> dt.datetime:
    """Parse ``value`` and drop the sub-second part, matching what is stored."""

    return parse_timestamp(value, field=field).replace(microsecond=0)
