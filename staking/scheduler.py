"""Daily accrual scheduler.

Run as a worker process:
  python -m staking.scheduler

or let the API start it in the background with STAKE_SCHEDULER_ENABLED=true.
The loop wakes every STAKE_SCHEDULER_INTERVAL_SECONDS and runs the accrual
job once per calendar day (STAKE_TIMEZONE) once STAKE_ACCRUAL_HOUR:MINUTE
has passed.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .config import Settings, configure_logging
from .models import AccrualRunResult, utcnow
from .service import StakingService

logger = logging.getLogger(__name__)


class DailyAccrualScheduler:
    def __init__(
        self,
        service: StakingService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.settings = settings or service.settings
        self.clock = clock
        self.last_run_date: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def due_date(self) -> Optional[str]:
        local = self.clock().astimezone(ZoneInfo(self.settings.timezone))
        if (local.hour, local.minute) < (self.settings.accrual_hour, self.settings.accrual_minute):
            return None
        today = local.date().isoformat()
        return None if today == self.last_run_date else today

    def tick(self) -> Optional[AccrualRunResult]:
        run_date = self.due_date()
        if run_date is None:
            return None
        result = self.service.run_daily_accrual(run_date)
        self.last_run_date = run_date
        return result

    def run_forever(self) -> None:
        logger.info(
            f"[scheduler] enabled, accrual at {self.settings.accrual_hour:02d}:{self.settings.accrual_minute:02d} "
            f"{self.settings.timezone}"
        )
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("[scheduler] scheduled run failed")
            self._stop.wait(self.settings.scheduler_interval_seconds)

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="daily-accrual", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    DailyAccrualScheduler(StakingService(settings=settings), settings).run_forever()


if __name__ == "__main__":
    main()
