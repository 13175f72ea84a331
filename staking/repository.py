from typing import Iterator, Optional, Union

from .errors import UserNotFound
from .models import (
    COMPANY,
    COMPANY_METRICS_ID,
    DEPOSITS,
    DISTRIBUTION_JOBS,
    REFERRALS,
    STAKES,
    TRANSFERS,
    USERS,
    CompanyMetrics,
    Deposit,
    DistributionJob,
    Referral,
    Stake,
    StakeStatus,
    Transfer,
    TransferKind,
    User,
)
from .store import DocumentStore, Transaction, order_key

# Reads and writes go through either the store or an open transaction;
# both expose the same get/set/query signatures.
Accessor = Union[DocumentStore, Transaction]

ACCRUAL_ORDER = ("remaining_days", "id")
STAKE_ID_ORDER = ("id",)


class LedgerRepository:
    def __init__(self, store: DocumentStore):
        self.store = store

    def _reader(self, reader: Optional[Accessor]) -> Accessor:
        return reader if reader is not None else self.store

    # Users

    def get_user(self, user_id: str, reader: Optional[Accessor] = None) -> Optional[User]:
        data = self._reader(reader).get(USERS, user_id)
        return User(**data) if data else None

    def require_user(self, user_id: str, reader: Optional[Accessor] = None) -> User:
        user = self.get_user(user_id, reader)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")
        return user

    def find_user_by_referral_code(self, code: str, reader: Optional[Accessor] = None) -> Optional[User]:
        docs = self._reader(reader).query(USERS, filters=[("referral_code", "==", code)], limit=1)
        return User(**docs[0]) if docs else None

    def save_user(self, writer: Accessor, user: User) -> None:
        writer.set(USERS, user.id, user.model_dump())

    # Deposits and stakes

    def get_deposit(self, reference: str, reader: Optional[Accessor] = None) -> Optional[Deposit]:
        data = self._reader(reader).get(DEPOSITS, reference)
        return Deposit(**data) if data else None

    def save_deposit(self, writer: Accessor, deposit: Deposit) -> None:
        writer.set(DEPOSITS, deposit.id, deposit.model_dump())

    def get_stake(self, stake_id: str, reader: Optional[Accessor] = None) -> Optional[Stake]:
        data = self._reader(reader).get(STAKES, stake_id)
        return Stake(**data) if data else None

    def save_stake(self, writer: Accessor, stake: Stake) -> None:
        writer.set(STAKES, stake.id, stake.model_dump())

    def update_stake(self, stake_id: str, **fields) -> None:
        self.store.set(STAKES, stake_id, fields, merge=True)

    def iter_accrual_pages(self, page_size: int) -> Iterator[list[Stake]]:
        """Active stakes with days left, ordered by (remaining_days, id)."""
        filters = [("status", "==", StakeStatus.ACTIVE.value), ("remaining_days", ">", 0)]
        yield from self._pages(filters, ACCRUAL_ORDER, page_size)

    def iter_active_stake_pages(self, page_size: int) -> Iterator[list[Stake]]:
        filters = [("status", "==", StakeStatus.ACTIVE.value)]
        yield from self._pages(filters, STAKE_ID_ORDER, page_size)

    def iter_undistributed_stake_pages(self, page_size: int) -> Iterator[list[Stake]]:
        filters = [
            ("status", "==", StakeStatus.ACTIVE.value),
            ("distribution_processed", "==", False),
        ]
        yield from self._pages(filters, STAKE_ID_ORDER, page_size)

    def _pages(self, filters, order_by, page_size: int) -> Iterator[list[Stake]]:
        cursor = None
        while True:
            docs = self.store.query(STAKES, filters=filters, order_by=order_by, start_after=cursor, limit=page_size)
            if not docs:
                return
            yield [Stake(**d) for d in docs]
            if len(docs) < page_size:
                return
            cursor = order_key(docs[-1], order_by)

    # Referrals and transfers

    def get_referral_for_deposit(self, deposit_ref: str, reader: Optional[Accessor] = None) -> Optional[Referral]:
        docs = self._reader(reader).query(REFERRALS, filters=[("deposit_ref", "==", deposit_ref)], limit=1)
        return Referral(**docs[0]) if docs else None

    def save_referral(self, writer: Accessor, referral: Referral) -> None:
        writer.set(REFERRALS, referral.id, referral.model_dump())

    def get_transfer(self, transfer_key: str, reader: Optional[Accessor] = None) -> Optional[Transfer]:
        data = self._reader(reader).get(TRANSFERS, transfer_key)
        return Transfer(**data) if data else None

    def save_transfer(self, writer: Accessor, transfer: Transfer) -> None:
        writer.set(TRANSFERS, transfer.id, transfer.model_dump(), merge=True)

    def transfers_for_stake(self, stake_id: str, kind: Optional[TransferKind] = None) -> list[Transfer]:
        filters = [("stake_id", "==", stake_id)]
        if kind is not None:
            filters.append(("kind", "==", kind))
        return [Transfer(**d) for d in self.store.query(TRANSFERS, filters=filters, order_by=("id",))]

    # Distribution jobs

    def get_job(self, stake_id: str, reader: Optional[Accessor] = None) -> Optional[DistributionJob]:
        data = self._reader(reader).get(DISTRIBUTION_JOBS, stake_id)
        return DistributionJob(**data) if data else None

    def save_job(self, writer: Accessor, job: DistributionJob) -> None:
        writer.set(DISTRIBUTION_JOBS, job.id, job.model_dump())

    def update_job(self, stake_id: str, **fields) -> None:
        self.store.set(DISTRIBUTION_JOBS, stake_id, fields, merge=True)

    # Company metrics

    def get_metrics(self) -> CompanyMetrics:
        data = self.store.get(COMPANY, COMPANY_METRICS_ID)
        return CompanyMetrics(**data) if data else CompanyMetrics()

    def increment_metrics(self, updated_at=None, **deltas: int) -> None:
        extra = {"updated_at": updated_at} if updated_at is not None else None
        self.store.increment(COMPANY, COMPANY_METRICS_ID, deltas, extra)
