"""
Tests for PushOps utility modules.

Covers: logging (JSON formatter, masking), timezone.
"""
import json
import logging
from datetime import datetime, timezone

from src.utils.logging import (
    StructuredJsonFormatter,
    mask_secret,
    set_correlation_id,
)
from src.utils.timezone import ensure_utc, isoformat_or_none, utc_day_start


def _record(msg="Campaign sent", **extra):
    record = logging.LogRecord("src.services.campaigns", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ---------------------------------------------------------------------------
# src/utils/logging.py
# ---------------------------------------------------------------------------


class TestStructuredJsonFormatter:
    """Tests for the JSON log line shape."""

    def test_line_carries_service_and_correlation_id(self):
        set_correlation_id("cycle-1")
        entry = json.loads(StructuredJsonFormatter().format(_record()))

        assert entry["service"] == "pushops"
        assert entry["correlation_id"] == "cycle-1"
        assert entry["module"] == "src.services.campaigns"
        assert entry["message"] == "Campaign sent"

    def test_engine_ids_lifted_from_extra(self):
        entry = json.loads(StructuredJsonFormatter().format(
            _record(campaign_id="c-1", trigger_key="trigger.renewal.reminder", unrelated="x")
        ))

        assert entry["campaign_id"] == "c-1"
        assert entry["trigger_key"] == "trigger.renewal.reminder"
        assert "unrelated" not in entry

    def test_device_token_is_masked(self):
        entry = json.loads(StructuredJsonFormatter().format(
            _record(device_token="ExponentPushToken[secret-value]")
        ))
        assert entry["device_token"] == "Exponent***"
        assert "secret-value" not in json.dumps(entry)

    def test_custom_service_name(self):
        entry = json.loads(StructuredJsonFormatter("pushops-worker").format(_record()))
        assert entry["service"] == "pushops-worker"


class TestMaskSecret:
    def test_keeps_prefix(self):
        assert mask_secret("abcdefghijkl") == "abcdefgh***"

    def test_empty(self):
        assert mask_secret("") == ""


# ---------------------------------------------------------------------------
# src/utils/timezone.py
# ---------------------------------------------------------------------------


class TestTimezoneHelpers:
    def test_naive_treated_as_utc(self):
        value = ensure_utc(datetime(2026, 3, 10, 12, 0))
        assert value.tzinfo == timezone.utc

    def test_day_start(self):
        start = utc_day_start(datetime(2026, 3, 10, 23, 59, tzinfo=timezone.utc))
        assert start == datetime(2026, 3, 10, tzinfo=timezone.utc)

    def test_isoformat_none(self):
        assert isoformat_or_none(None) is None
