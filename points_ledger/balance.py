import logging
from typing import Optional

from .errors import InvalidAmount, PointsLedgerError
from .models import (
    CustomerPointsAccount,
    PointsChange,
    PointsReference,
    PointsTransaction,
    ReferenceType,
    TransactionHistoryResponse,
    TransactionType,
)

logger = logging.getLogger(__name__)


def require_positive_points(points) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidAmount(f"Points must be a positive integer, got {points!r}")
    return points


class BalanceStore:
    """Single choke point for every balance mutation.

    Each mutation is handed to the storage layer as one ``PointsChange`` so
    the account update and the log append land together or not at all.
    """

    def __init__(self, storage):
        self.storage = storage

    def get_balance(self, customer_id: str) -> CustomerPointsAccount:
        try:
            account = self.storage.get_account(customer_id)
        except Exception:
            # Balance reads never fail a checkout.
            logger.exception("Failed to read points balance for %s, returning zero balance", customer_id)
            return CustomerPointsAccount.empty(customer_id)
        return account or CustomerPointsAccount.empty(customer_id)

    def credit(
        self, customer_id: str, points: int, reference: PointsReference
    ) -> tuple[CustomerPointsAccount, PointsTransaction]:
        points = require_positive_points(points)
        return self._apply(PointsChange(
            customer_id=customer_id,
            points_change=points,
            transaction_type=TransactionType.EARNED,
            reference_type=reference.type,
            reference_id=reference.id,
            description=reference.description or f"Earned {points} points",
        ))

    def debit(
        self, customer_id: str, points: int, reference: PointsReference
    ) -> tuple[CustomerPointsAccount, PointsTransaction]:
        points = require_positive_points(points)
        return self._apply(PointsChange(
            customer_id=customer_id,
            points_change=-points,
            transaction_type=TransactionType.REDEEMED,
            reference_type=reference.type,
            reference_id=reference.id,
            description=reference.description or f"Redeemed {points} points",
        ))

    def adjust(
        self,
        customer_id: str,
        delta: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> tuple[CustomerPointsAccount, PointsTransaction]:
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidAmount(f"Adjustment must be a non-zero integer, got {delta!r}")
        return self._apply(PointsChange(
            customer_id=customer_id,
            points_change=delta,
            transaction_type=TransactionType.MANUAL_ADJUSTMENT,
            reference_type=ReferenceType.MANUAL_ADJUSTMENT,
            reference_id=reference_id,
            description=description or f"Manual adjustment of {delta:+d} points",
        ))

    def get_transactions(self, customer_id: str, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        entries, total = self.storage.list_transactions(customer_id, limit=limit, offset=offset)
        return TransactionHistoryResponse(
            customer_id=customer_id,
            entries=entries,
            total_count=total,
            current_balance=self.get_balance(customer_id).current_balance,
        )

    def _apply(self, change: PointsChange) -> tuple[CustomerPointsAccount, PointsTransaction]:
        try:
            account, entry = self.storage.apply_change(change)
        except PointsLedgerError as e:
            logger.warning(
                "Points change rejected for %s (%+d, %s): %s",
                change.customer_id, change.points_change, change.reference_type.value, e,
            )
            raise
        logger.info(
            "Points %s for %s: %+d -> balance %d (ref %s:%s)",
            change.transaction_type.value,
            change.customer_id,
            change.points_change,
            entry.balance_after,
            change.reference_type.value,
            change.reference_id,
        )
        return account, entry
