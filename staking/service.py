import logging
from datetime import date, datetime
from typing import Any, Callable, Optional, Union

from .accrual import DailyAccrualJob
from .config import Settings
from .deposits import DepositCreditor
from .distribution import DistributionEngine
from .errors import StakeNotFound, StakingError
from .models import (
    AccrualRunResult,
    DepositCreditResult,
    DistributionResult,
    PaymentResponse,
    Stake,
    SweepResult,
    User,
    utcnow,
)
from .repository import LedgerRepository
from .store import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)


class StakingService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or InMemoryDocumentStore()
        self.settings = settings or Settings()
        self.repo = LedgerRepository(self.store)
        self.deposits = DepositCreditor(self.store, self.settings, clock)
        self.accrual = DailyAccrualJob(self.store, self.settings, clock)
        self.distribution = DistributionEngine(self.store, self.settings, clock)

    def credit_deposit(
        self,
        reference: str,
        gross_amount: int,
        user_id: str,
        phone: Optional[str] = None,
        raw_event: Optional[dict[str, Any]] = None,
    ) -> DepositCreditResult:
        return self.deposits.credit_deposit(reference, gross_amount, user_id, phone, raw_event)

    def run_daily_accrual(self, run_date: Union[date, str, None] = None) -> AccrualRunResult:
        return self.accrual.run(run_date)

    def run_distribution(self, stake_id: str) -> DistributionResult:
        return self.distribution.run_for_stake(stake_id)

    def sweep_pending_distributions(self) -> SweepResult:
        return self.distribution.sweep_pending()

    def handle_confirmed_payment(
        self,
        reference: str,
        gross_amount: int,
        user_id: str,
        phone: Optional[str] = None,
        raw_event: Optional[dict[str, Any]] = None,
    ) -> PaymentResponse:
        deposit = self.credit_deposit(reference, gross_amount, user_id, phone, raw_event)
        if deposit.already_credited:
            return PaymentResponse(deposit=deposit, message="Deposit already credited (idempotent return)")
        if not deposit.stake_created:
            return PaymentResponse(deposit=deposit, message="Deposit credited, stake already existed")

        try:
            distribution = self.run_distribution(reference)
        except StakingError as exc:
            # The pending sweep retries it; the credit itself stands.
            logger.warning(f"Distribution for stake {reference} deferred: {exc}")
            return PaymentResponse(deposit=deposit, message="Deposit credited, distribution deferred")
        return PaymentResponse(deposit=deposit, distribution=distribution, message="Deposit credited and distributed")

    def get_user(self, user_id: str) -> User:
        return self.repo.require_user(user_id)

    def get_stake(self, stake_id: str) -> Stake:
        stake = self.repo.get_stake(stake_id)
        if stake is None:
            raise StakeNotFound(f"Stake {stake_id} not found")
        return stake
