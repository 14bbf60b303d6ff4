"""
Error tracking and high-severity alerting

Sentry is optional: without SENTRY_DSN every helper degrades to logging only.
Events leave the process with provider signatures removed and owner phone
numbers masked.
"""
import logging
from typing import Any, Dict, Optional

import sentry_sdk
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from reviewpilot.core.config import get_settings
from reviewpilot.core.logging import mask_phone_numbers

logger = logging.getLogger(__name__)

SECRET_HEADERS = ("stripe-signature", "x-twilio-signature", "authorization", "cookie")
UNTRACKED_TRANSACTIONS = ("/health", "/metrics")


def scrub_event(event: Dict[str, Any], hint=None) -> Optional[Dict[str, Any]]:
    """Sentry before_send hook"""
    if event.get("transaction") in UNTRACKED_TRANSACTIONS:
        return None

    request = event.get("request") or {}
    headers = request.get("headers") or {}
    for name in list(headers):
        if name.lower() in SECRET_HEADERS:
            headers[name] = "[Filtered]"

    # Inbound SMS form bodies carry From/Body
    if request.get("data"):
        request["data"] = "[Filtered]"

    if isinstance(event.get("message"), str):
        event["message"] = mask_phone_numbers(event["message"])
    for entry in (event.get("logentry"), event.get("extra")):
        if isinstance(entry, dict):
            for key, value in entry.items():
                if isinstance(value, str):
                    entry[key] = mask_phone_numbers(value)
    return event


class ObservabilityManager:
    """Owns the Sentry client and HTTP instrumentation for the current process"""

    def __init__(self):
        self.sentry_initialized = False
        self.instrumentator: Optional[Instrumentator] = None

    def initialize_sentry(self, environment: Optional[str] = None) -> bool:
        settings = get_settings()
        environment = environment or settings.environment

        if not settings.sentry_dsn:
            logger.info("SENTRY_DSN not configured, alerts are logged only")
            return False

        try:
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                environment=environment,
                release=f"reviewpilot@{settings.api_version}",
                traces_sample_rate=0.05 if settings.is_production() else 0.5,
                send_default_pii=False,
                integrations=[
                    FastApiIntegration(transaction_style="endpoint"),
                    CeleryIntegration(monitor_beat_tasks=True),
                    SqlalchemyIntegration(),
                    LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
                ],
                before_send=scrub_event,
            )
        except Exception as e:
            logger.error(f"Failed to initialize Sentry: {e}")
            return False

        sentry_sdk.set_tag("service", "reviewpilot")
        self.sentry_initialized = True
        logger.info(f"Sentry initialized for {environment}")
        return True

    def initialize_prometheus(self, app) -> bool:
        """Instrument HTTP handlers and expose /metrics"""
        try:
            self.instrumentator = Instrumentator(
                should_group_status_codes=True,
                should_ignore_untemplated=True,
                excluded_handlers=list(UNTRACKED_TRANSACTIONS),
            )
            self.instrumentator.instrument(app)
            self.instrumentator.expose(app, endpoint="/metrics", include_in_schema=False)
        except Exception as e:
            logger.error(f"Failed to initialize Prometheus metrics: {e}")
            return False
        return True

    def capture_message(self, message: str, level: str = "info", extra_context: Optional[dict] = None):
        if not self.sentry_initialized:
            return
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra_context or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)


observability = ObservabilityManager()


def get_observability_manager() -> ObservabilityManager:
    return observability


def capture_alert(message: str, level: str = "error", **context) -> None:
    """
    Raise a high-severity operational alert.

    Always logged; forwarded to Sentry when it is configured. Used for
    events that need a human: failed cancellations and notifications that
    ran out of retry attempts.
    """
    log_level = logging.CRITICAL if level in ("fatal", "critical") else logging.ERROR
    logger.log(log_level, f"ALERT: {message} {context}")
    observability.capture_message(message, level=level, extra_context=context)
