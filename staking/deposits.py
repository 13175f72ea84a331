import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .config import Settings
from .errors import InvalidAmount, UserNotFound
from .models import (
    Deposit,
    DepositCreditResult,
    Referral,
    Stake,
    StakeStatus,
    User,
    referral_id,
    utcnow,
)
from .money import net_of_fee, round_units
from .repository import LedgerRepository
from .store import DocumentStore, Transaction

logger = logging.getLogger(__name__)


class DepositCreditor:
    """Turns a confirmed payment into a stake, exactly once per payment reference."""

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

    def credit_deposit(
        self,
        reference: str,
        gross_amount: int,
        user_id: str,
        phone: Optional[str] = None,
        raw_event: Optional[dict[str, Any]] = None,
    ) -> DepositCreditResult:
        if not reference:
            raise InvalidAmount("Payment reference is required")
        gross = round_units(gross_amount)
        if gross <= 0:
            raise InvalidAmount(f"Deposit {reference} has non-positive amount {gross_amount}")

        result = self.store.run_transaction(
            lambda tx: self._credit(tx, reference, gross, user_id, phone, raw_event)
        )

        if result.already_credited:
            logger.info(f"Deposit {reference} already credited, nothing to do")
            return result

        if result.stake_created:
            try:
                self.repo.increment_metrics(updated_at=self.clock(), total_company_stakes=result.net_principal)
            except Exception as exc:
                logger.warning(f"Company metrics not updated for deposit {reference}: {exc}")

        logger.info(
            f"Deposit processed: {reference} +{gross} (principal={result.net_principal} "
            f"fee={result.deposit_fee}) user={user_id} stake_created={result.stake_created}"
        )
        return result

    def _credit(
        self,
        tx: Transaction,
        reference: str,
        gross: int,
        user_id: str,
        phone: Optional[str],
        raw_event: Optional[dict[str, Any]],
    ) -> DepositCreditResult:
        deposit = self.repo.get_deposit(reference, reader=tx)
        if deposit is not None and deposit.credited:
            return DepositCreditResult(
                reference=reference,
                user_id=deposit.user_id,
                gross_amount=deposit.gross_amount,
                net_principal=deposit.net_principal,
                deposit_fee=deposit.deposit_fee,
                stake_created=False,
                already_credited=True,
            )

        user = self.repo.get_user(user_id, reader=tx)
        if user is None:
            raise UserNotFound(f"User {user_id} not found for deposit {reference}")
        existing_stake = self.repo.get_stake(reference, reader=tx)
        referrer = self._resolve_referrer(tx, user)

        # No reads past this point.
        now = self.clock()
        net_principal = net_of_fee(gross, self.settings.fee_rate)
        deposit_fee = gross - net_principal

        if existing_stake is None:
            self.repo.save_stake(tx, Stake(
                id=reference,
                user_id=user_id,
                principal=net_principal,
                daily_rate=self.settings.daily_rate,
                total_days=self.settings.duration_days,
                remaining_days=self.settings.duration_days,
                earned_so_far=0,
                status=StakeStatus.ACTIVE,
                distribution_processed=False,
                deposit_ref=reference,
                created_at=now,
            ))

        self.repo.save_user(tx, user.model_copy(update={
            "total_deposited": user.total_deposited + gross,
            "updated_at": now,
        }))

        referral = None
        if referrer is not None:
            referral = self._pay_referrer(tx, referrer, user, reference, gross, now)

        self.repo.save_deposit(tx, Deposit(
            id=reference,
            user_id=user_id,
            gross_amount=gross,
            deposit_fee=deposit_fee,
            net_principal=net_principal,
            credited=True,
            phone=phone,
            gateway=self.settings.gateway,
            status="successful",
            raw_event=raw_event,
            created_at=deposit.created_at if deposit and deposit.created_at else now,
            credited_at=now,
        ))

        return DepositCreditResult(
            reference=reference,
            user_id=user_id,
            gross_amount=gross,
            net_principal=net_principal,
            deposit_fee=deposit_fee,
            stake_created=existing_stake is None,
            referral=referral,
        )

    def _resolve_referrer(self, tx: Transaction, user: User) -> Optional[User]:
        if not user.referrer_code:
            return None
        referrer = self.repo.find_user_by_referral_code(user.referrer_code, reader=tx)
        if referrer is None:
            logger.warning(f"Referrer code {user.referrer_code} of user {user.id} matches no user")
            return None
        if referrer.id == user.id or referrer.has_paid_referee(user.id):
            return None
        return referrer

    def _pay_referrer(
        self,
        tx: Transaction,
        referrer: User,
        referee: User,
        reference: str,
        gross: int,
        now: datetime,
    ) -> Referral:
        rate = self.settings.referral_bonus_rate
        bonus = round_units(gross * rate)
        self.repo.save_user(tx, referrer.model_copy(update={
            "returns_wallet": referrer.returns_wallet + bonus,
            "paid_referees_ids": [*referrer.paid_referees_ids, referee.id],
            "updated_at": now,
        }))
        referral = Referral(
            id=referral_id(referrer.id, referee.id),
            referrer_id=referrer.id,
            referee_id=referee.id,
            deposit_ref=reference,
            bonus=bonus,
            rate=rate,
            amount=gross,
            created_at=now,
        )
        self.repo.save_referral(tx, referral)
        return referral
