#!/usr/bin/env python3
"""
N'GNA SÔRÔ! Loan Repayment Service Entry Point

Starts the FastAPI server with the loan repayment and reminder service.
Set NGNASORO_SCHEDULER_ENABLED=true to run the daily reminder sweep in-process.
"""

import sys

from ngnasoro.api import run_server
from ngnasoro.config import get_config
from ngnasoro.logging_config import setup_logging


if __name__ == "__main__":
    settings = get_config()
    logger = setup_logging(settings.log_level, settings.log_format)

    logger.info(
        "Starting loan repayment service on %s:%d (storage: %s, reminders: %s)",
        settings.api_host, settings.api_port, settings.storage_backend, settings.reminder_cron
    )

    try:
        run_server(
            host=settings.api_host,
            port=settings.api_port,
            debug=False
        )
    except KeyboardInterrupt:
        logger.info("Shutting down loan repayment service")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
