"""
Pipeline Prometheus Metrics

Counters for the ingestion cycle, SMS traffic, retries and billing webhooks,
with small track_* helpers so call sites stay one line.
"""
import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

REVIEWS_INGESTED = Counter(
    'reviewpilot_reviews_ingested_total',
    'Reviews persisted with a reply draft',
    ['platform', 'sentiment', 'draft_source']
)

REVIEW_DUPLICATES = Counter(
    'reviewpilot_review_duplicates_total',
    'Fetched reviews skipped because they were already stored',
    ['platform']
)

SOURCE_ERRORS = Counter(
    'reviewpilot_source_errors_total',
    'Review source failures by kind',
    ['platform', 'kind']
)

POLL_CYCLE_DURATION = Histogram(
    'reviewpilot_poll_cycle_duration_seconds',
    'Duration of one account poll cycle'
)

SMS_MESSAGES = Counter(
    'reviewpilot_sms_messages_total',
    'SMS messages by direction and outcome',
    ['direction', 'outcome']
)

INBOUND_COMMANDS = Counter(
    'reviewpilot_inbound_commands_total',
    'Parsed inbound SMS commands',
    ['command']
)

NOTIFICATION_RETRIES = Counter(
    'reviewpilot_notification_retries_total',
    'Notification retry outcomes',
    ['outcome']
)

BILLING_WEBHOOK_EVENTS = Counter(
    'reviewpilot_billing_webhook_events_total',
    'Billing webhook events by type and processing result',
    ['event_type', 'result']
)

CRISIS_ALERTS = Counter(
    'reviewpilot_crisis_alerts_total',
    'Crisis checks that found events, by outcome',
    ['severity', 'outcome']
)


def track_review_ingested(platform: str, sentiment: str, is_fallback: bool):
    REVIEWS_INGESTED.labels(
        platform=platform,
        sentiment=sentiment,
        draft_source='template_fallback' if is_fallback else 'generator'
    ).inc()


def track_review_duplicate(platform: str):
    REVIEW_DUPLICATES.labels(platform=platform).inc()


def track_source_error(platform: str, kind: str):
    SOURCE_ERRORS.labels(platform=platform, kind=kind).inc()


def track_sms(direction: str, outcome: str):
    SMS_MESSAGES.labels(direction=direction, outcome=outcome).inc()


def track_inbound_command(command: str):
    INBOUND_COMMANDS.labels(command=command).inc()


def track_notification_retry(outcome: str):
    NOTIFICATION_RETRIES.labels(outcome=outcome).inc()


def track_billing_webhook(event_type: str, result: str):
    BILLING_WEBHOOK_EVENTS.labels(event_type=event_type, result=result).inc()


def track_crisis_alert(severity: str, outcome: str):
    CRISIS_ALERTS.labels(severity=severity, outcome=outcome).inc()
