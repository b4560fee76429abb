"""
Points and Referral Ledger for a Laundry Service

This module provides:
- Per-customer points balances backed by an append-only transaction log
- Referral code validation and one-time usage recording
- Points redemption against order totals
- Runtime-configurable referral settings with safe defaults
- In-memory and SQL storage backends
"""

from .errors import (
    AlreadyRecorded,
    BelowMinimum,
    InsufficientBalance,
    InvalidAmount,
    PointsLedgerError,
    ReferralCodeTaken,
    ReferralInvalid,
    StorageUnavailable,
)
from .models import (
    CustomerPointsAccount,
    PointsReference,
    PointsTransaction,
    ReferenceType,
    ReferralRejection,
    ReferralSettings,
    ReferralUsage,
    ReferralValidation,
    TransactionType,
)
from .service import PointsLedgerService, create_storage
from .storage import InMemoryStorage

__all__ = [
    "AlreadyRecorded",
    "BelowMinimum",
    "InsufficientBalance",
    "InvalidAmount",
    "PointsLedgerError",
    "ReferralCodeTaken",
    "ReferralInvalid",
    "StorageUnavailable",
    "CustomerPointsAccount",
    "PointsReference",
    "PointsTransaction",
    "ReferenceType",
    "ReferralRejection",
    "ReferralSettings",
    "ReferralUsage",
    "ReferralValidation",
    "TransactionType",
    "PointsLedgerService",
    "create_storage",
    "InMemoryStorage",
]
