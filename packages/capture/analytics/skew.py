"""
Skew analysis over down-sampled price summaries.

Skew is |price - final value| where the final value is 1.0 for the outcome a
market resolved to and 0.0 for every other outcome. Because summaries share
the fixed UTC snapshot grid, skew can be bucketed by hours-before-close and
averaged across markets without interpolation.
"""

import math
from collections import defaultdict
from typing import Iterable, Optional

from pydantic import BaseModel

from packages.capture.analytics.downsampling import slot_timestamp_ms

BUCKET_HOURS = 6
MS_PER_HOUR = 3_600_000


class SkewBucket(BaseModel):
    hours_before_close: int
    avg_skew: float
    min_skew: float
    max_skew: float
    sample_count: int


class SkewStats(BaseModel):
    overall_avg_skew: float
    skew_at_24h: Optional[float] = None
    skew_at_48h: Optional[float] = None
    skew_at_7d: Optional[float] = None
    total_data_points: int


class SkewAnalysis(BaseModel):
    market_count: int
    data_points: list[SkewBucket]
    stats: Optional[SkewStats] = None


def _get(row, key):
    return row[key] if isinstance(row, dict) else getattr(row, key)


def _close_time_ms(market) -> Optional[int]:
    return _get(market, "closed_time") or _get(market, "end_date")


def compute_skew_analysis(markets: Iterable, summaries: Iterable) -> SkewAnalysis:
    """
    Aggregate skew per hours-before-close bucket.

    Args:
        markets: Market rows/models (id, closed, resolved_outcome, closed_time, end_date)
        summaries: DailyPriceSummary rows/models for those markets

    Returns:
        SkewAnalysis with buckets ordered by ascending hours before close
    """
    resolved = {}
    for market in markets:
        if not _get(market, "closed") or not _get(market, "resolved_outcome"):
            continue
        close_ms = _close_time_ms(market)
        if not close_ms:
            continue
        resolved[str(_get(market, "id"))] = (_get(market, "resolved_outcome"), close_ms)

    buckets: dict[int, list[float]] = defaultdict(list)
    contributing: set[str] = set()

    for row in summaries:
        market_id = str(_get(row, "market_id"))
        if market_id not in resolved:
            continue
        winner, close_ms = resolved[market_id]
        hour = _get(row, "hour")
        if hour is None:
            continue
        row_ms = slot_timestamp_ms(_get(row, "date"), hour)
        if row_ms > close_ms:
            continue

        hours_before = (close_ms - row_ms) / MS_PER_HOUR
        bucket = int(math.floor(hours_before / BUCKET_HOURS)) * BUCKET_HOURS
        final_value = 1.0 if _get(row, "outcome_label") == winner else 0.0
        buckets[bucket].append(abs(float(_get(row, "price")) - final_value))
        contributing.add(market_id)

    data_points = [
        SkewBucket(
            hours_before_close=hours,
            avg_skew=sum(values) / len(values),
            min_skew=min(values),
            max_skew=max(values),
            sample_count=len(values),
        )
        for hours, values in sorted(buckets.items())
    ]

    if not data_points:
        return SkewAnalysis(market_count=len(contributing), data_points=[])

    all_values = [v for values in buckets.values() for v in values]
    by_hours = {dp.hours_before_close: dp.avg_skew for dp in data_points}
    stats = SkewStats(
        overall_avg_skew=sum(all_values) / len(all_values),
        skew_at_24h=by_hours.get(24),
        skew_at_48h=by_hours.get(48),
        skew_at_7d=by_hours.get(168),
        total_data_points=len(all_values),
    )
    return SkewAnalysis(market_count=len(contributing), data_points=data_points, stats=stats)
