"""
Stake Ledger

This package provides:
- Deposit crediting: confirmed payment -> stake, once per payment reference
- Daily accrual: one day of return per active stake per calendar day
- Distribution: referral bonus release, then a principal-funded, weighted
  unlock of every active staker's locked returns
- A transactional document store interface with an in-memory implementation
"""

from .config import Settings
from .models import (
    StakeStatus,
    TransferKind,
    JobReason,
    User,
    Deposit,
    Stake,
    Referral,
    Transfer,
    DistributionJob,
    CompanyMetrics,
)
from .service import StakingService
from .store import DocumentStore, InMemoryDocumentStore

__all__ = [
    "Settings",
    "StakeStatus",
    "TransferKind",
    "JobReason",
    "User",
    "Deposit",
    "Stake",
    "Referral",
    "Transfer",
    "DistributionJob",
    "CompanyMetrics",
    "StakingService",
    "DocumentStore",
    "InMemoryDocumentStore",
]
