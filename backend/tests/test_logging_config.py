"""
Tests for log masking and context rendering
"""
import json
import logging

from dealroom.core.logging_config import JsonFormatter, LoggingConfig, MaskingFilter, TextFormatter


def _record(msg, **extra):
    record = logging.LogRecord("dealroom.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_mask_hides_references_and_credentials():
    text = MaskingFilter.mask("paid payment_reference=wire-001 via postgresql://app:hunter2@db/dealroom")
    assert "wire-001" not in text
    assert "hunter2" not in text
    assert "postgresql://app:***@db/dealroom" in text


def test_masking_filter_covers_extra_fields():
    record = _record("payout paid", payment_reference="wire-77")
    assert MaskingFilter().filter(record)
    assert record.payment_reference == "***"


def test_json_formatter_includes_context_and_extra():
    LoggingConfig.set_context(request_id="req-1", participant_id=None)
    try:
        entry = json.loads(JsonFormatter().format(_record("activated", deal_id="d-1")))
    finally:
        LoggingConfig.clear_context()

    assert entry["message"] == "activated"
    assert entry["request_id"] == "req-1"
    assert entry["deal_id"] == "d-1"
    assert "participant_id" not in entry


def test_text_formatter_appends_fields():
    line = TextFormatter("%(levelname)s %(message)s").format(_record("vote cast", proposal_id="cp-1"))
    assert line == "INFO vote cast [proposal_id=cp-1]"
