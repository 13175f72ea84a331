from datetime import datetime, timedelta
from decimal import Decimal

from staking.models import Stake, StakeStatus, User
from staking.repository import LedgerRepository


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def seed_user(store, user_id: str, **fields) -> User:
    user = User(id=user_id, **fields)
    LedgerRepository(store).save_user(store, user)
    return user


def seed_stake(store, stake_id: str, user_id: str, principal: int, **fields) -> Stake:
    values = {
        "daily_rate": Decimal("0.10"),
        "total_days": 20,
        "remaining_days": 20,
        "status": StakeStatus.ACTIVE,
        "deposit_ref": stake_id,
        **fields,
    }
    stake = Stake(id=stake_id, user_id=user_id, principal=principal, **values)
    LedgerRepository(store).save_stake(store, stake)
    return stake
