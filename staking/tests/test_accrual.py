"""
Unit Tests for the daily accrual job

Tests cover:
1. One day of return per stake per date
2. Stake lifecycle through completion
3. Pagination over many stakes
4. Per-stake failure isolation
"""

from datetime import date, timedelta
from decimal import Decimal

from staking.config import Settings
from staking.models import StakeStatus
from staking.service import StakingService

from .factories import seed_stake, seed_user


class TestDailyAccrual:
    """Tests for a single run."""

    def test_credits_one_day(self, service, store):
        """10% of 2,000 is credited to the returns wallet."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        result = service.run_daily_accrual("2024-03-01")

        assert result.processed == 1
        assert result.paid_total == 200
        user = service.get_user("alice")
        assert user.returns_wallet == 200
        assert user.account_balance == 0
        stake = service.get_stake("S1")
        assert stake.earned_so_far == 200
        assert stake.remaining_days == 19
        assert stake.last_processed_date == "2024-03-01"

    def test_same_day_rerun_is_a_no_op(self, service, store):
        """Running twice on one date credits once."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        service.run_daily_accrual("2024-03-01")
        second = service.run_daily_accrual("2024-03-01")

        assert second.processed == 0
        assert second.skipped == 1
        assert service.get_user("alice").returns_wallet == 200
        assert service.get_stake("S1").earned_so_far == 200

    def test_backdated_run_is_a_no_op(self, service, store):
        """An earlier date never credits again or moves the processed date back."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        service.run_daily_accrual("2024-03-02")
        backdated = service.run_daily_accrual("2024-03-01")
        repeated = service.run_daily_accrual("2024-03-02")

        assert backdated.processed == 0
        assert backdated.skipped == 1
        assert repeated.processed == 0
        stake = service.get_stake("S1")
        assert stake.earned_so_far == 200
        assert stake.remaining_days == 19
        assert stake.last_processed_date == "2024-03-02"
        assert service.get_user("alice").returns_wallet == 200

    def test_default_date_comes_from_clock(self, service, store, clock):
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        result = service.run_daily_accrual()

        assert result.date == clock.now.date().isoformat()
        assert service.get_stake("S1").last_processed_date == "2024-03-01"

    def test_accepts_date_objects(self, service, store):
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)

        result = service.run_daily_accrual(date(2024, 3, 5))

        assert result.date == "2024-03-05"

    def test_stakes_of_one_user_accumulate(self, service, store):
        """Each stake pays its own daily return into the same wallet."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)
        seed_stake(store, "S2", "alice", 1000, daily_rate=Decimal("0.05"))

        service.run_daily_accrual("2024-03-01")

        assert service.get_user("alice").returns_wallet == 250

    def test_inactive_stakes_are_not_touched(self, service, store):
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000, status=StakeStatus.COMPLETED, remaining_days=0)

        result = service.run_daily_accrual("2024-03-01")

        assert result.processed == 0
        assert service.get_user("alice").returns_wallet == 0


class TestStakeLifecycle:
    """Tests across consecutive days."""

    def test_full_term(self, service, store):
        """200 a day for 20 days: 4,000 earned, stake completed."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)
        start = date(2024, 3, 1)

        completed = 0
        for day in range(25):
            completed += service.run_daily_accrual(start + timedelta(days=day)).completed

        stake = service.get_stake("S1")
        assert stake.earned_so_far == 4000
        assert stake.remaining_days == 0
        assert stake.status == StakeStatus.COMPLETED
        assert stake.completed_at is not None
        assert stake.last_processed_date == "2024-03-20"
        assert completed == 1
        assert service.get_user("alice").returns_wallet == 4000


class TestPagination:
    """Tests for paging over many stakes."""

    def test_every_stake_processed_across_pages(self, store, clock):
        """Small pages still reach every due stake exactly once."""
        service = StakingService(store=store, settings=Settings(accrual_page_size=2), clock=clock)
        seed_user(store, "alice")
        for i, remaining in enumerate([5, 1, 3, 3, 2, 1, 4]):
            seed_stake(store, f"S{i}", "alice", 1000, remaining_days=remaining)

        result = service.run_daily_accrual("2024-03-01")

        assert result.processed == 7
        assert result.completed == 2
        assert service.get_user("alice").returns_wallet == 700
        for i in range(7):
            assert service.get_stake(f"S{i}").last_processed_date == "2024-03-01"


class TestFailureIsolation:
    """Tests for per-stake failures."""

    def test_failed_stake_does_not_stop_the_run(self, service, store):
        """A stake whose owner is missing fails alone and is retried later."""
        seed_user(store, "alice")
        seed_stake(store, "S1", "alice", 2000)
        seed_stake(store, "S2", "ghost", 2000)
        seed_stake(store, "S3", "alice", 1000)

        result = service.run_daily_accrual("2024-03-01")

        assert result.processed == 2
        assert result.failed == 1
        assert service.get_user("alice").returns_wallet == 300
        orphan = service.get_stake("S2")
        assert orphan.last_processed_date is None
        assert orphan.remaining_days == 20

        seed_user(store, "ghost")
        retry = service.run_daily_accrual("2024-03-01")

        assert retry.processed == 1
        assert service.get_user("ghost").returns_wallet == 200
