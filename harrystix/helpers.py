import hmac
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple


# ----------------------------
# Helpers
# ----------------------------
def local_now() -> datetime:
    # server-local wall clock, tz-aware
    return datetime.now().astimezone()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money
# ----------------------------
CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(unit_price, quantity: int) -> str:
    return str(to_money(Decimal(str(unit_price)) * quantity))


def to_minor_units(amount) -> int:
    # gateways reject fractional units: round, never truncate
    minor = Decimal(str(amount)) * 100
    return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ----------------------------
# Calendar week (Sunday 00:00 .. next Sunday 00:00, exclusive)
# ----------------------------
def _local_midnight(day: date) -> datetime:
    # naive local wall time, so each midnight gets its own UTC offset
    return datetime.combine(day, time()).astimezone()


def week_bounds(reference: datetime) -> Tuple[datetime, datetime]:
    """Server-local week containing `reference`, end exclusive."""
    day = reference.astimezone().date()
    # weekday(): Monday=0 .. Sunday=6
    sunday = day - timedelta(days=(day.weekday() + 1) % 7)
    return (_local_midnight(sunday),
            _local_midnight(sunday + timedelta(days=7)))


def week_bounds_ts(reference: datetime) -> Tuple[float, float]:
    start, end = week_bounds(reference)
    return start.timestamp(), end.timestamp()
