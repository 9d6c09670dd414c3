"""
Analytics module for captured price data.

Exports:
- downsample_price_history: fixed-hour daily snapshot reduction
- compute_skew_analysis: price deviation from final outcome by hours before close
"""

from packages.capture.analytics.downsampling import (
    DEFAULT_TARGET_HOURS,
    DEFAULT_TOLERANCE_MINUTES,
    SlotSample,
    downsample_price_history,
    slot_timestamp_ms,
)
from packages.capture.analytics.skew import (
    SkewAnalysis,
    SkewBucket,
    SkewStats,
    compute_skew_analysis,
)

__all__ = [
    "DEFAULT_TARGET_HOURS",
    "DEFAULT_TOLERANCE_MINUTES",
    "SlotSample",
    "downsample_price_history",
    "slot_timestamp_ms",
    "SkewAnalysis",
    "SkewBucket",
    "SkewStats",
    "compute_skew_analysis",
]
