import logging
from datetime import date, datetime
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo

from .config import Settings
from .errors import UserNotFound
from .models import AccrualRunResult, Stake, StakeStatus, utcnow
from .repository import LedgerRepository
from .store import DocumentStore, Transaction

logger = logging.getLogger(__name__)


class DailyAccrualJob:
    """Credits one day of return to every active stake, at most once per date.

    Safe to re-run: a stake whose ``last_processed_date`` is on or after the
    run date is skipped, and the guard is checked again inside the
    transaction that moves the money. A stake that fails is logged and left
    untouched so the next run picks it up.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.repo = LedgerRepository(store)
        self.settings = settings or Settings()
        self.clock = clock

    def today(self) -> str:
        return self.clock().astimezone(ZoneInfo(self.settings.timezone)).date().isoformat()

    def run(self, run_date: Union[date, str, None] = None) -> AccrualRunResult:
        if run_date is None:
            today = self.today()
        elif isinstance(run_date, datetime):
            today = run_date.date().isoformat()
        elif isinstance(run_date, date):
            today = run_date.isoformat()
        else:
            today = date.fromisoformat(run_date).isoformat()

        logger.info(f"[accrual] Daily returns start for {today}")
        result = AccrualRunResult(date=today)

        for page in self.repo.iter_accrual_pages(self.settings.accrual_page_size):
            for stake in page:
                if not stake.is_due(today):
                    result.skipped += 1
                    continue
                try:
                    accrued = self.store.run_transaction(
                        lambda tx, stake_id=stake.id: self._accrue(tx, stake_id, today)
                    )
                except Exception:
                    logger.exception(f"[accrual] Stake {stake.id} daily process failed")
                    result.failed += 1
                    continue

                if accrued is None:
                    result.skipped += 1
                    continue
                result.processed += 1
                result.paid_total += accrued.daily_return()
                if accrued.status == StakeStatus.COMPLETED:
                    result.completed += 1

        logger.info(
            f"[accrual] Daily returns done for {today}: processed={result.processed} "
            f"skipped={result.skipped} failed={result.failed} paid_total={result.paid_total}"
        )
        return result

    def _accrue(self, tx: Transaction, stake_id: str, today: str) -> Optional[Stake]:
        stake = self.repo.get_stake(stake_id, reader=tx)
        # Re-checked here: a retry may race a previous partial success.
        if stake is None or not stake.is_due(today):
            return None
        user = self.repo.get_user(stake.user_id, reader=tx)
        if user is None:
            raise UserNotFound(f"User {stake.user_id} of stake {stake_id} not found")

        now = self.clock()
        daily = stake.daily_return()
        self.repo.save_user(tx, user.model_copy(update={
            "returns_wallet": user.returns_wallet + daily,
            "updated_at": now,
        }))
        accrued = stake.accrue(daily, today, now)
        self.repo.save_stake(tx, accrued)
        return accrued
