"""
Unit tests for log formatting and phone masking
"""
import json
import logging

from reviewpilot.core.logging import JsonFormatter, PhoneMaskingFilter, mask_phone_numbers


def make_record(msg, *args, **extra):
    record = logging.LogRecord("reviewpilot.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestPhoneMasking:

    def test_keeps_last_four_digits(self):
        assert mask_phone_numbers("Sent alert to +15551230000") == "Sent alert to +***0000"

    def test_leaves_other_numbers_alone(self):
        assert mask_phone_numbers("Review 42 rated 5") == "Review 42 rated 5"

    def test_filter_masks_formatted_args(self):
        record = make_record("Inbound SMS from %s: %s", "+447700900123", "YES")

        assert PhoneMaskingFilter().filter(record) is True
        assert record.getMessage() == "Inbound SMS from +***0123: YES"


class TestJsonFormatter:

    def test_includes_service_and_context_fields(self):
        record = make_record("Polled account", account_id=7, task_id="abc")

        entry = json.loads(JsonFormatter("reviewpilot-worker").format(record))

        assert entry["service"] == "reviewpilot-worker"
        assert entry["message"] == "Polled account"
        assert entry["account_id"] == 7
        assert entry["task_id"] == "abc"
        assert "review_id" not in entry
