"""
Process-wide cooperative shutdown flag

Set when the Celery worker begins a warm shutdown. Long-running loops check
it between units of work and stop early; the unit in progress completes.
"""
import logging
import threading

logger = logging.getLogger(__name__)

shutdown_event = threading.Event()


def request_shutdown() -> None:
    if not shutdown_event.is_set():
        logger.info("Shutdown requested, in-flight loops will stop after the current item")
    shutdown_event.set()


def shutdown_requested() -> bool:
    return shutdown_event.is_set()
