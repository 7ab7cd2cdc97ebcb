"""
Configuration

Read from the environment once at startup; tests build BillingConfig
directly.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional
import json
import os


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_display_rates(raw: str) -> Dict[str, Decimal]:
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
        return {str(k).upper(): Decimal(str(v)) for k, v in data.items()}
    except (ValueError, AttributeError, InvalidOperation) as e:
        raise ValueError(f"DISPLAY_RATES must be a JSON object of currency -> rate: {e}")


@dataclass
class BillingConfig:
    """Settings for the billing core."""
    database_url: str = "sqlite:///phonebooth.db"
    billing_unit_seconds: int = 60
    meter_interval_seconds: float = 5.0
    ring_timeout_seconds: int = 60
    lock_timeout_seconds: float = 2.0
    meter_lock_timeout_seconds: float = 0.5
    history_page_size: int = 500
    default_currency: str = "USD"
    display_rates: Dict[str, Decimal] = field(default_factory=dict)
    verify_ledger_on_append: bool = True
    start_meter: bool = True

    def __post_init__(self):
        if self.billing_unit_seconds <= 0:
            raise ValueError("billing_unit_seconds must be positive")
        if self.meter_interval_seconds <= 0:
            raise ValueError("meter_interval_seconds must be positive")
        if self.history_page_size <= 0:
            raise ValueError("history_page_size must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("DATABASE_URL", "sqlite:///phonebooth.db"),
            billing_unit_seconds=int(env.get("BILLING_UNIT_SECONDS", 60)),
            meter_interval_seconds=float(env.get("METER_INTERVAL_SECONDS", 5.0)),
            ring_timeout_seconds=int(env.get("RING_TIMEOUT_SECONDS", 60)),
            lock_timeout_seconds=float(env.get("LOCK_TIMEOUT_SECONDS", 2.0)),
            meter_lock_timeout_seconds=float(env.get("METER_LOCK_TIMEOUT_SECONDS", 0.5)),
            history_page_size=int(env.get("HISTORY_PAGE_SIZE", 500)),
            default_currency=env.get("DEFAULT_CURRENCY", "USD").upper(),
            display_rates=_parse_display_rates(env.get("DISPLAY_RATES", "")),
            verify_ledger_on_append=_env_bool(env.get("VERIFY_LEDGER_ON_APPEND", "true")),
            start_meter=_env_bool(env.get("START_METER", "true")),
        )
