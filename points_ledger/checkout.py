"""
Checkout integration.

Applies a referral code and a points redemption to an order total, then
commits both to the ledger once the order goes through. Nothing here ever
blocks the order: rejected codes, failed redemptions and ledger errors are
collected into ``errors`` and logged for manual reconciliation.
"""

import logging
from typing import Optional

from .errors import PointsLedgerError
from .models import OrderData, OrderProcessingResult, PointsMutationResponse
from .service import PointsLedgerService

logger = logging.getLogger(__name__)


class OrderReferralIntegration:
    def __init__(self, service: PointsLedgerService):
        self.service = service

    def process_order(
        self,
        order: OrderData,
        referral_code: Optional[str] = None,
        points_to_redeem: Optional[int] = None,
    ) -> OrderProcessingResult:
        result = OrderProcessingResult(
            success=True,
            invoice_id=order.invoice_id,
            original_total=order.total_amount,
            final_total=order.total_amount,
        )

        referral_valid = False
        if referral_code:
            validation = self.service.referrals.validate_referral_code(referral_code, order.customer_id)
            if validation.valid:
                referral_valid = True
                result.referral_code = referral_code
                result.referral_discount = validation.discount_amount or 0
                result.points_awarded = validation.points_awarded or 0
            else:
                result.errors.append(validation.message or "Invalid referral code")

        if points_to_redeem:
            try:
                redemption = self.service.referrals.validate_points_redemption(order.customer_id, points_to_redeem)
            except PointsLedgerError as e:
                result.errors.append(e.message)
            else:
                result.points_used = points_to_redeem
                result.points_discount = redemption.discount_value

        result.final_total = max(0, order.total_amount - result.referral_discount - result.points_discount)

        if referral_valid:
            try:
                self.service.referrals.record_referral_usage(referral_code, order.customer_id, order.invoice_id)
            except PointsLedgerError as e:
                logger.error(
                    "Referral %s not recorded for order %s, needs reconciliation: %s",
                    referral_code, order.invoice_id, e,
                )
                result.errors.append(e.message)

        if result.points_discount > 0:
            try:
                self.service.referrals.deduct_points(order.customer_id, result.points_used, order.invoice_id)
            except PointsLedgerError as e:
                logger.error(
                    "Points not deducted for order %s, needs reconciliation: %s", order.invoice_id, e,
                )
                result.errors.append(e.message)

        result.success = not result.errors
        return result

    def rollback_order(
        self, order: OrderData, points_used: int = 0, points_awarded: int = 0
    ) -> Optional[PointsMutationResponse]:
        """Return points spent on a failed order.

        Referrer points are not clawed back automatically; a warning is
        logged so an admin can apply a manual adjustment.
        """
        refund = None
        if points_used > 0:
            account, entry = self.service.balance.adjust(
                order.customer_id,
                points_used,
                f"Points returned due to order failure: {order.invoice_id}",
                reference_id=order.invoice_id,
            )
            refund = PointsMutationResponse(success=True, new_balance=account.current_balance, transaction=entry)

        if points_awarded > 0:
            logger.warning(
                "Manual adjustment needed: remove %d points from referrer for failed order %s",
                points_awarded, order.invoice_id,
            )
        return refund
