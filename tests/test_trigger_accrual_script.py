"""
Tests for the accrual CLI arguments
"""

from datetime import datetime, timedelta, UTC

import pytest

from scripts.trigger_accrual import parse_args
from src.utils.clock import utc_now


def test_defaults():
    args = parse_args([])
    assert args.now is None
    assert args.dry_run is False
    assert args.seed_tiers is False


def test_past_now_is_normalized_to_utc():
    args = parse_args(["--now", "2024-01-01T00:05:00", "--dry-run"])

    assert args.now == datetime(2024, 1, 1, 0, 5, tzinfo=UTC)
    assert args.dry_run is True


def test_future_now_is_rejected(capsys):
    future = (utc_now() + timedelta(days=3650)).isoformat()

    with pytest.raises(SystemExit) as exc_info:
        parse_args(["--now", future])

    assert exc_info.value.code == 2
    assert "in the future" in capsys.readouterr().err
