"""
Fail every capture request stuck in processing so the next one can be admitted.

Usage:
    python scripts/reset_processing.py [--message "Manually stopped"]
"""

import argparse
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packages.capture.storage import CaptureQueries, reset_db_pool

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--message", default="Manually stopped", help="Error message stored on the request")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    try:
        current = CaptureQueries.get_processing()
        if current is None:
            logger.info("No request is processing")
            return

        logger.info(
            f"Processing: {current['id']} ({current.get('name') or 'unnamed'}), "
            f"{current['progress_processed']}/{current['progress_total']} done"
        )
        count = CaptureQueries.reset_processing(args.message)
        logger.info(f"Reset {count} processing request(s)")
    finally:
        reset_db_pool()


if __name__ == "__main__":
    main()
