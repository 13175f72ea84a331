import logging
import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()  # Load .env file if present


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    fee_rate: Decimal = Decimal("0.10")
    daily_rate: Decimal = Decimal("0.10")
    duration_days: int = 20
    referral_bonus_rate: Decimal = Decimal("0.20")

    accrual_page_size: int = 500
    distribution_page_size: int = 200
    enumeration_page_size: int = 1000
    lock_lease_seconds: int = 600

    timezone: str = "UTC"
    accrual_hour: int = 0
    accrual_minute: int = 10
    scheduler_interval_seconds: int = 60
    scheduler_enabled: bool = False

    gateway: str = "SiliconPay"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            fee_rate=_env_decimal("STAKE_FEE_RATE", "0.10"),
            daily_rate=_env_decimal("STAKE_DAILY_RATE", "0.10"),
            duration_days=_env_int("STAKE_DURATION_DAYS", "20"),
            referral_bonus_rate=_env_decimal("STAKE_REFERRAL_BONUS_RATE", "0.20"),
            accrual_page_size=_env_int("STAKE_ACCRUAL_PAGE_SIZE", "500"),
            distribution_page_size=_env_int("STAKE_DISTRIBUTION_PAGE_SIZE", "200"),
            enumeration_page_size=_env_int("STAKE_ENUMERATION_PAGE_SIZE", "1000"),
            lock_lease_seconds=_env_int("STAKE_LOCK_LEASE_SECONDS", "600"),
            timezone=os.getenv("STAKE_TIMEZONE", "UTC"),
            accrual_hour=_env_int("STAKE_ACCRUAL_HOUR", "0"),
            accrual_minute=_env_int("STAKE_ACCRUAL_MINUTE", "10"),
            scheduler_interval_seconds=_env_int("STAKE_SCHEDULER_INTERVAL_SECONDS", "60"),
            scheduler_enabled=_env_bool("STAKE_SCHEDULER_ENABLED", "false"),
            gateway=os.getenv("STAKE_GATEWAY", "SiliconPay"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
