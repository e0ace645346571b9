"""
Gunicorn config. Starts the health monitor thread in each worker process
(post_fork). With --workers 2, two processes each probe Nominatim on
their own interval.

when_ready logs the effective upstream endpoints once the server is
accepting connections.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
# Nominatim and the listing backend each get a 10s timeout; leave headroom.
timeout = 30


def when_ready(server):
    """Log where lookups and searches will go."""
    logger = logging.getLogger("gunicorn.error")
    try:
        from search_config import SEARCH_CONFIG
        logger.info(
            "Nearby search ready: nominatim=%s listings=%s%s",
            SEARCH_CONFIG.geocoding.base_url,
            SEARCH_CONFIG.listings.api_base,
            SEARCH_CONFIG.listings.path,
        )
    except Exception:
        logger.exception("Failed to read search configuration")


def post_fork(server, worker):
    """Start the health monitor in this gunicorn worker process."""
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start health monitor: %s", e)
