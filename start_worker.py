#!/usr/bin/env python3
"""
Maintenance worker runner.

Starts the periodic job that expires idle sessions and backfills session
geolocation. Configuration comes from the same environment as the API.
"""

import asyncio
import sys

from config import AppSettings
from shared.logging import get_logger, setup_logging
from workers.maintenance_worker import run_maintenance_worker

log = get_logger(__name__)


def main():
    settings = AppSettings()
    setup_logging(settings.logging)
    log.info("maintenance_worker_starting", env=settings.env)
    try:
        asyncio.run(run_maintenance_worker(settings))
    except KeyboardInterrupt:
        log.info("maintenance_worker_interrupted")
    except Exception as e:
        log.error("maintenance_worker_crashed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
