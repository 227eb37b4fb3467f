#!/usr/bin/env python3
"""
Celery worker script for the LMS payment service.
Runs the worker for payment emails together with the beat scheduler that
expires unpaid orders.
"""

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

if __name__ == "__main__":
    from core.config import settings
    from core.logging import configure_logging
    from core.celery import celery_app

    configure_logging(settings.LOG_LEVEL)

    # Start Celery worker with embedded beat
    celery_app.start([
        "worker",
        "--beat",
        f"--loglevel={settings.LOG_LEVEL.lower()}",
        "--concurrency=4",
        "--without-gossip",
        "--without-mingle",
        "--without-heartbeat",
    ])
