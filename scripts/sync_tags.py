"""
Refresh the cached Polymarket tag list once, outside the daily schedule.

Usage:
    python scripts/sync_tags.py
"""

import asyncio
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apps.collector.adapters.polymarket import PolymarketClient
from apps.collector.jobs.tag_sync import sync_tags
from packages.capture.storage import get_capture_store, reset_db_pool


async def run():
    client = PolymarketClient()
    try:
        result = await sync_tags(get_capture_store(), client)
        print(f"Done: {result.reason}")
    finally:
        await client.close()
        reset_db_pool()


def main():
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run())


if __name__ == "__main__":
    main()
