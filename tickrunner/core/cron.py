from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from tickrunner.core.exceptions import InvalidCronExpression


logger = logging.getLogger("cron")

TzLike = Union[str, ZoneInfo, None]


def resolve_timezone(tz: TzLike) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    name = (tz or "UTC").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        # Assume already UTC naive
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def validate(expression: str) -> str:
    """Return the normalised 5-field expression or raise InvalidCronExpression."""
    expr = " ".join(str(expression or "").split())
    if not expr:
        raise InvalidCronExpression(expression, "empty expression")
    fields = expr.split(" ")
    if len(fields) != 5:
        raise InvalidCronExpression(expression, f"expected 5 fields, got {len(fields)}")
    if not croniter.is_valid(expr):
        raise InvalidCronExpression(expression)
    return expr


def _local_naive(at_utc: datetime, tz: ZoneInfo) -> datetime:
    aware = to_utc_naive(at_utc).replace(tzinfo=timezone.utc).astimezone(tz)
    # croniter behaves best with naive datetimes (interpreted in the given tz)
    return aware.replace(tzinfo=None)


def _utc_candidates(local_naive: datetime, tz: ZoneInfo) -> List[datetime]:
    # a wall time inside a repeated DST hour maps to two instants, one skipped
    # by a forward jump maps to none and is taken with the earlier offset
    instants = {to_utc_naive(local_naive.replace(tzinfo=tz, fold=fold)) for fold in (0, 1)}
    real = [i for i in instants if _local_naive(i, tz) == local_naive]
    return sorted(real) or [to_utc_naive(local_naive.replace(tzinfo=tz))]


def next_run(expression: str, *, after_utc: datetime, tz: TzLike = None) -> datetime:
    """First matching instant strictly after `after_utc`, as naive UTC."""
    zone = resolve_timezone(tz)
    after = to_utc_naive(after_utc)
    it = croniter(expression, _local_naive(after, zone))
    while True:
        for candidate in _utc_candidates(it.get_next(datetime), zone):
            if candidate > after:
                return candidate


def previous_run(expression: str, *, before_utc: datetime, tz: TzLike = None) -> datetime:
    """Last matching instant at or before `before_utc`, as naive UTC."""
    zone = resolve_timezone(tz)
    before = to_utc_naive(before_utc)
    base = _local_naive(before, zone)
    if croniter.match(expression, base) and base.second == 0 and base.microsecond == 0:
        matches = [c for c in _utc_candidates(base, zone) if c <= before]
        if matches:
            return matches[-1]
    it = croniter(expression, base)
    while True:
        matches = [c for c in _utc_candidates(it.get_prev(datetime), zone) if c <= before]
        if matches:
            return matches[-1]
