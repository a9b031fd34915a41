"""Tests for log redaction."""

import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from logger import RedactingFilter
from utils.log_sanitizer import mask_secret, sanitize_for_log, sanitize_log


def test_password_fields_redacted():
    assert sanitize_log("txtLoginId=100&txtPassword=hunter2") == "txtLoginId=100&txtPassword=[REDACTED]"
    assert "hunter2" not in sanitize_log('{"username": "u", "password": "hunter2"}')


def test_bearer_token_redacted():
    assert sanitize_log("Authorization header Bearer abc.def-123").endswith("Bearer [REDACTED]")


def test_session_cookie_redacted():
    assert sanitize_log("Cookie: JSESSIONID=ABCDEF123; Path=/") == "Cookie: JSESSIONID=[REDACTED]; Path=/"


def test_plain_text_untouched():
    assert sanitize_log("get_credit_bal status=200 412ms") == "get_credit_bal status=200 412ms"
    assert sanitize_log("") == ""


def test_sanitize_for_log_truncates():
    result = sanitize_for_log("word " * 60, max_length=50)
    assert result.endswith("[300 chars total]")
    assert sanitize_for_log(None) == "<None>"
    assert sanitize_for_log(b"password=abc") == "password=[REDACTED]"


def test_mask_secret():
    assert mask_secret("hunter2") == "hu*****"
    assert mask_secret("") == ""


def test_filter_rewrites_record():
    record = logging.LogRecord("evs_bot", logging.INFO, __file__, 1, "login password=%s", ("hunter2",), None)

    assert RedactingFilter().filter(record) is True
    assert record.getMessage() == "login password=[REDACTED]"
