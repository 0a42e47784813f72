"""Tests for logging setup helpers."""

import logging

import pytest

from warranty_sync.logging_conf import InstanceFilter, parse_levels


def test_parse_levels():
    assert parse_levels("urllib3=error, warranty_sync=DEBUG,") == {"urllib3": "ERROR", "warranty_sync": "DEBUG"}
    assert parse_levels("") == {}


@pytest.mark.parametrize("value", ["urllib3", "=INFO", "urllib3=LOUD"])
def test_parse_levels_rejects_bad_entries(value):
    with pytest.raises(ValueError):
        parse_levels(value)


def test_instance_filter_stamps_short_id():
    record = logging.LogRecord("warranty_sync", logging.INFO, __file__, 1, "hello", None, None)
    assert InstanceFilter("0123456789abcdef").filter(record)
    assert record.instance == "01234567"
