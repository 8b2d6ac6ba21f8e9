# coding: utf-8
"""
Autogrowth Configuration

Defaults for the accrual schedule, ledger locking, the boundary retry
policy and the seed tier catalog.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List


@dataclass
class ScheduleConfig:
    """Daily accrual run (UTC)."""
    accrual_hour: int = int(os.getenv("AUTOGROWTH_ACCRUAL_HOUR", "0"))
    accrual_minute: int = int(os.getenv("AUTOGROWTH_ACCRUAL_MINUTE", "5"))


@dataclass
class LockConfig:
    """Per-user ledger lock."""
    # An abandoned lock (crashed worker) can be taken over after this many seconds
    ttl_seconds: int = int(os.getenv("AUTOGROWTH_LOCK_TTL_SECONDS", "30"))


@dataclass
class RetryConfig:
    """Boundary retry policy for persistence failures."""
    attempts: int = int(os.getenv("AUTOGROWTH_RETRY_ATTEMPTS", "3"))
    initial_wait_sec: float = 0.2
    max_wait_sec: float = float(os.getenv("AUTOGROWTH_RETRY_MAX_WAIT", "5"))


@dataclass
class AutogrowthConfig:
    """Main autogrowth configuration."""
    # Only positions in this currency count toward tier equity
    qualifying_currency: str = os.getenv("AUTOGROWTH_QUALIFYING_CURRENCY", "USD")

    # Used to quote a USDT top-up for a tier shortfall
    usdt_to_usd_rate: Decimal = Decimal(os.getenv("AUTOGROWTH_USDT_TO_USD_RATE", "0.99"))

    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


# =======================
# SEED TIER CATALOG
# =======================

# Tier 1: $150 - $1,000 (30% total over 3 days)
# Tier 2: $1,000.01 - $10,000 (45% total over 7 days)
# Tier 3: $10,000.01 - $20,000 (50% total over 14 days)
# Tier 4: $20,000.01 - $50,000 (100% total over 30 days)
# Tier 5: $50,000.01 - $10,000,000 (200% total over 60 days)
DEFAULT_TIERS: List[Dict[str, Any]] = [
    {
        "id": 1,
        "name": "Tier 1",
        "min_amount": Decimal("150.00"),
        "max_amount": Decimal("1000.00"),
        "days": 3,
        "daily_roi": Decimal("0.1"),
        "allocation_mix": {"BTC": 40, "ETH": 30, "USDT": 30},
    },
    {
        "id": 2,
        "name": "Tier 2",
        "min_amount": Decimal("1000.01"),
        "max_amount": Decimal("10000.00"),
        "days": 7,
        "daily_roi": Decimal("0.0643"),
        "allocation_mix": {"BTC": 35, "ETH": 35, "USDT": 30},
    },
    {
        "id": 3,
        "name": "Tier 3",
        "min_amount": Decimal("10000.01"),
        "max_amount": Decimal("20000.00"),
        "days": 14,
        "daily_roi": Decimal("0.0357"),
        "allocation_mix": {"BTC": 30, "ETH": 40, "USDT": 30},
    },
    {
        "id": 4,
        "name": "Tier 4",
        "min_amount": Decimal("20000.01"),
        "max_amount": Decimal("50000.00"),
        "days": 30,
        "daily_roi": Decimal("0.0333"),
        "allocation_mix": {"BTC": 25, "ETH": 45, "USDT": 30},
    },
    {
        "id": 5,
        "name": "Tier 5",
        "min_amount": Decimal("50000.01"),
        "max_amount": Decimal("10000000.00"),
        "days": 60,
        "daily_roi": Decimal("0.0333"),
        "allocation_mix": {"BTC": 20, "ETH": 50, "USDT": 30},
    },
]


# Singleton instance
AUTOGROWTH_CONFIG = AutogrowthConfig()


def get_config() -> AutogrowthConfig:
    """Return the process-wide autogrowth configuration."""
    return AUTOGROWTH_CONFIG
