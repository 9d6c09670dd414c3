"""
Price history downsampling.

Reduces a dense CLOB series to at most one sample per (UTC date, target hour)
slot. A sample competes for a slot only when it lies within the tolerance of
that slot's target hour; the closest sample wins and, on equal distance, the
earliest one in input order is kept.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

DEFAULT_TARGET_HOURS = (0, 6, 12, 18)
DEFAULT_TOLERANCE_MINUTES = 180


@dataclass
class SlotSample:
    """Winning sample for one (date, hour) slot."""
    date: str
    hour: int
    timestamp_ms: int
    price: float
    distance_minutes: int


def _point_fields(point) -> tuple[int, float]:
    if isinstance(point, dict):
        return int(point["t"]), float(point["p"])
    if isinstance(point, (tuple, list)):
        return int(point[0]), float(point[1])
    return int(point.t), float(point.p)


def downsample_price_history(
    points: Iterable,
    target_hours: Sequence[int] = DEFAULT_TARGET_HOURS,
    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
) -> list[SlotSample]:
    """
    Keep the sample closest to each target hour per UTC calendar day.

    Args:
        points: (unix_seconds, price) samples as dicts {"t", "p"}, tuples or
            objects with ``t``/``p`` attributes, in any order
        target_hours: UTC hours to sample
        tolerance_minutes: Max distance from a target hour for a candidate

    Returns:
        One SlotSample per surviving slot, in first-seen slot order
    """
    slots: dict[tuple[str, int], SlotSample] = {}

    for point in points:
        ts, price = _point_fields(point)
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        date_key = dt.strftime("%Y-%m-%d")
        minute_of_day = dt.hour * 60 + dt.minute

        for hour in target_hours:
            distance = abs(minute_of_day - hour * 60)
            if distance > tolerance_minutes:
                continue

            key = (date_key, hour)
            existing: Optional[SlotSample] = slots.get(key)
            if existing is None or distance < existing.distance_minutes:
                slots[key] = SlotSample(
                    date=date_key,
                    hour=hour,
                    timestamp_ms=ts * 1000,
                    price=price,
                    distance_minutes=distance,
                )

    return list(slots.values())


def slot_timestamp_ms(date: str, hour: int) -> int:
    """Epoch millis of a slot's target instant."""
    dt = datetime.strptime(date, "%Y-%m-%d").replace(hour=hour, tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)
