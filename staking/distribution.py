"""
Distribution engine.

Each new stake funds one sweep that moves money only from users' locked
``returns_wallet`` into their spendable ``account_balance``:

1. the referral bonus logged for the stake's deposit is released to the
   referrer (capped by what the referrer actually holds)
2. the rest of the principal is the pool, shared among every user holding
   an active stake in proportion to their total active principal

Every move writes a transfer whose id is derived from the stake and the
user (``REF-<stake>-<user>``, ``DIST-<stake>-<user>``). Finding that id
already written means the move happened on an earlier attempt, so a retry
replays the recorded amount instead of paying twice. The job document keyed
by the stake id holds a leased lock, the sweep cursor and the running
totals, so a crashed run resumes after the last user of the last finished
page.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Settings
from .errors import AlreadyCompleted, AlreadyLocked, AlreadyProcessed, StakeNotFound
from .models import (
    DistributionJob,
    DistributionOutcome,
    DistributionResult,
    JobReason,
    Stake,
    SweepResult,
    Transfer,
    TransferKind,
    transfer_id,
    utcnow,
)
from .money import weighted_share
from .repository import LedgerRepository
from .store import DocumentStore, Transaction

logger = logging.getLogger(__name__)

SOURCE = "auto-distributor"


class DistributionEngine:
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

    # Public API

    def run_for_stake(self, stake_id: str) -> DistributionResult:
        stake = self.repo.get_stake(stake_id)
        if stake is None:
            raise StakeNotFound(f"Stake not found: {stake_id}")

        job = self._acquire(stake_id)
        try:
            result = self._execute(stake, job)
        except Exception as exc:
            logger.exception(f"[distributor] failed for stake {stake_id}")
            self._release(stake_id, str(exc))
            raise

        logger.info(
            f"[distributor] stake={stake_id} principal={result.principal} referral={result.referral_moved} "
            f"weighted-distributed={result.distributed} users={result.total_users} "
            f"TAP={result.total_active_principal}"
        )
        return result

    def sweep_pending(self) -> SweepResult:
        """Run every active stake whose distribution has not finished yet."""
        sweep = SweepResult()
        pending = [
            stake.id
            for page in self.repo.iter_undistributed_stake_pages(self.settings.enumeration_page_size)
            for stake in page
        ]
        for stake_id in pending:
            try:
                result = self.run_for_stake(stake_id)
            except AlreadyProcessed:
                sweep.outcomes.append(DistributionOutcome(stake_id=stake_id, status="already_processed"))
            except AlreadyLocked as exc:
                sweep.outcomes.append(DistributionOutcome(stake_id=stake_id, status="locked", error=str(exc)))
            except Exception as exc:
                # Already logged and unlocked by run_for_stake.
                sweep.outcomes.append(DistributionOutcome(stake_id=stake_id, status="failed", error=str(exc)))
            else:
                sweep.outcomes.append(DistributionOutcome(stake_id=stake_id, status="distributed", result=result))
        logger.info(
            f"[distributor] sweep done: distributed={sweep.count('distributed')} "
            f"locked={sweep.count('locked')} failed={sweep.count('failed')}"
        )
        return sweep

    # Job lifecycle

    def _acquire(self, stake_id: str) -> DistributionJob:
        def _lock(tx: Transaction) -> DistributionJob:
            now = self.clock()
            job = self.repo.get_job(stake_id, reader=tx)
            if job is not None:
                if job.done:
                    raise AlreadyCompleted(f"Distribution job for stake {stake_id} already completed")
                if job.lease_held(now):
                    raise AlreadyLocked(f"Distribution job for stake {stake_id} already locked until {job.locked_until}")
                if job.locked:
                    logger.warning(f"[distributor] reclaiming expired lock on stake {stake_id} (was {job.locked_until})")
            else:
                job = DistributionJob(id=stake_id, created_at=now)
            job = job.model_copy(update={
                "locked": True,
                "locked_until": self._lease_expiry(now),
                "attempts": job.attempts + 1,
                "error": None,
                "heartbeat": now,
            })
            self.repo.save_job(tx, job)
            return job

        return self.store.run_transaction(_lock)

    def _lease_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.settings.lock_lease_seconds)

    def _release(self, stake_id: str, error: str) -> None:
        self.repo.update_job(stake_id, locked=False, locked_until=None, error=error, heartbeat=self.clock())

    def _checkpoint(self, stake_id: str, **progress) -> None:
        now = self.clock()
        self.repo.update_job(stake_id, heartbeat=now, locked_until=self._lease_expiry(now), **progress)

    def _finish(self, stake: Stake, reason: JobReason, referral_moved: int, distributed: int) -> None:
        now = self.clock()
        self.repo.update_stake(
            stake.id,
            distribution_processed=True,
            distribution_at=now,
            distribution_amount=distributed,
            referral_moved=referral_moved,
            distribution_reason=reason,
        )
        self.repo.update_job(
            stake.id,
            done=True,
            locked=False,
            locked_until=None,
            reason=reason,
            referral_moved=referral_moved,
            total_distributed=distributed,
            completed_at=now,
        )

    # Sweep

    def _execute(self, stake: Stake, job: DistributionJob) -> DistributionResult:
        if stake.principal <= 0:
            self._finish(stake, JobReason.INVALID_PRINCIPAL, 0, 0)
            return DistributionResult(stake_id=stake.id, principal=stake.principal, reason=JobReason.INVALID_PRINCIPAL)

        referral_moved = self._pay_referral(stake)
        pool = max(0, stake.principal - referral_moved)

        # Counted from the written transfers, so a lost checkpoint cannot skew it.
        distributed = sum(t.amount for t in self.repo.transfers_for_stake(stake.id, TransferKind.DISTRIBUTION))
        resumed_from = job.cursor
        last_user_id = job.last_user_id
        total_users = resumed_from
        total_active_principal = 0

        if pool > 0:
            per_user_principal, total_active_principal = self._active_principal_map()
            if last_user_id is not None:
                # Shares stay relative to the total seen when the sweep started.
                total_active_principal = job.total_active_principal
                logger.info(f"[distributor] resuming stake {stake.id} after user {last_user_id} ({resumed_from} done)")
            user_ids = sorted(uid for uid in per_user_principal if last_user_id is None or uid > last_user_id)
            total_users = resumed_from + len(user_ids)

            if user_ids and total_active_principal > 0:
                page_size = self.settings.distribution_page_size
                for offset in range(0, len(user_ids), page_size):
                    page = user_ids[offset:offset + page_size]
                    distributed += self._distribute_slice(
                        stake.id, page, per_user_principal, pool, total_active_principal, distributed
                    )
                    self._checkpoint(
                        stake.id,
                        cursor=resumed_from + offset + len(page),
                        last_user_id=page[-1],
                        total_users=total_users,
                        total_active_principal=total_active_principal,
                        pool=pool,
                        referral_moved=referral_moved,
                        total_distributed=distributed,
                    )

        self.repo.increment_metrics(updated_at=self.clock(), total_company_transfers=distributed + referral_moved)
        self._finish(stake, JobReason.NORMAL, referral_moved, distributed)

        return DistributionResult(
            stake_id=stake.id,
            principal=stake.principal,
            referral_moved=referral_moved,
            pool=pool,
            distributed=distributed,
            total_users=total_users,
            total_active_principal=total_active_principal,
            reason=JobReason.NORMAL,
            resumed_from=resumed_from,
        )

    def _pay_referral(self, stake: Stake) -> int:
        referral = self.repo.get_referral_for_deposit(stake.deposit_ref or stake.id)
        if referral is None or referral.bonus <= 0:
            return 0
        amount, _ = self.store.run_transaction(lambda tx: self._unlock(
            tx,
            TransferKind.REFERRAL,
            stake.id,
            referral.referrer_id,
            referral.bonus,
            f"Referral bonus for stake {stake.id}",
        ))
        return amount

    def _active_principal_map(self) -> tuple[dict[str, int], int]:
        per_user: dict[str, int] = {}
        total = 0
        for page in self.repo.iter_active_stake_pages(self.settings.enumeration_page_size):
            for stake in page:
                if not stake.user_id or stake.principal <= 0:
                    continue
                per_user[stake.user_id] = per_user.get(stake.user_id, 0) + stake.principal
                total += stake.principal
        return per_user, total

    def _distribute_slice(
        self,
        stake_id: str,
        user_ids: list[str],
        per_user_principal: dict[str, int],
        pool: int,
        total_active_principal: int,
        already_distributed: int,
    ) -> int:
        """Pay one page of users and return what newly moved.

        Replayed transfers are already part of ``already_distributed``.
        """
        moved = 0
        for user_id in user_ids:
            remaining = pool - already_distributed - moved
            if remaining <= 0:
                break
            target = min(
                weighted_share(pool, per_user_principal[user_id], total_active_principal),
                remaining,
            )
            if target <= 0:
                continue
            take, replayed = self.store.run_transaction(lambda tx, uid=user_id, cap=target: self._unlock(
                tx,
                TransferKind.DISTRIBUTION,
                stake_id,
                uid,
                cap,
                f"Weighted distribution from stake {stake_id}",
            ))
            if not replayed:
                moved += take
        return moved

    def _unlock(
        self,
        tx: Transaction,
        kind: TransferKind,
        stake_id: str,
        user_id: str,
        cap: int,
        reason: str,
    ) -> tuple[int, bool]:
        """Move up to ``cap`` from the user's returns wallet, once per transfer id.

        Returns the amount and whether it was replayed from an earlier attempt.
        """
        key = transfer_id(kind, stake_id, user_id)
        existing = self.repo.get_transfer(key, reader=tx)
        user = self.repo.get_user(user_id, reader=tx)
        if existing is not None:
            return existing.amount, True
        if user is None:
            logger.warning(f"[distributor] user {user_id} missing, skipping {key}")
            return 0, False

        take = min(cap, user.returns_wallet)
        if take <= 0:
            return 0, False

        now = self.clock()
        self.repo.save_user(tx, user.unlock(take, now))
        self.repo.save_transfer(tx, Transfer(
            id=key,
            user_id=user_id,
            stake_id=stake_id,
            kind=kind,
            amount=take,
            type="transfer",
            reason=reason,
            source=SOURCE,
            phone=user.phone or "",
            created_at=now,
        ))
        return take, False
