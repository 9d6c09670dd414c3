# API adapters

from apps.collector.adapters.polymarket import (
    PolymarketAPIError,
    PolymarketClient,
    RetryExhaustedError,
    close_polymarket_client,
    get_polymarket_client,
)

__all__ = [
    "PolymarketClient",
    "PolymarketAPIError",
    "RetryExhaustedError",
    "get_polymarket_client",
    "close_polymarket_client",
]
