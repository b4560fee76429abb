import logging
from typing import Optional

from .balance import BalanceStore, require_positive_points
from .errors import (
    AlreadyRecorded,
    BelowMinimum,
    InsufficientBalance,
    InvalidAmount,
    PointsLedgerError,
    ReferralInvalid,
    StorageUnavailable,
)
from .models import (
    Customer,
    PointsChange,
    PointsMutationResponse,
    PointsRedemptionResult,
    PointsReference,
    RecordReferralResponse,
    ReferenceType,
    ReferralRejection,
    ReferralSettings,
    ReferralValidation,
    TransactionType,
)
from .referral_settings import SettingsResolver, default_settings

logger = logging.getLogger(__name__)

LOOKUP_UNAVAILABLE_MESSAGE = "Referral lookup unavailable: storage unreachable"
SETTINGS_UNREACHABLE_MESSAGE = "Referral settings unreachable"


class ReferralValidator:
    """Referral code checks, usage recording and points redemption.

    Validation is a dry run. Recording re-validates, because a code that was
    valid at cart time can be stale by the time the order completes.
    """

    def __init__(
        self,
        storage,
        balance: Optional[BalanceStore] = None,
        settings: Optional[SettingsResolver] = None,
        *,
        fallback_on_error: bool = True,
    ):
        self.storage = storage
        self.balance = balance or BalanceStore(storage)
        self.settings = settings or SettingsResolver(storage)
        self.fallback_on_error = fallback_on_error

    # -----------------------------
    # Referral codes
    # -----------------------------
    def validate_referral_code(self, code: str, customer_id: str) -> ReferralValidation:
        try:
            referrer, settings = self._check(code, customer_id)
        except ReferralInvalid as e:
            logger.info("Referral code %s rejected for %s: %s", code, customer_id, e.reason.value)
            return ReferralValidation.rejected(e.reason, e.message)
        except StorageUnavailable:
            # Code and usage lookups failed; settings were never consulted.
            logger.exception("Referral lookup for code %s failed, storage unreachable", code)
            return ReferralValidation.rejected(
                ReferralRejection.SETTINGS_UNAVAILABLE, LOOKUP_UNAVAILABLE_MESSAGE
            )

        return ReferralValidation(
            valid=True,
            referrer_customer_id=referrer.customer_id,
            discount_amount=settings.referral_discount_amount,
            points_awarded=settings.referrer_points_earned,
        )

    def record_referral_usage(
        self,
        code: str,
        customer_id: str,
        order_invoice_id: str,
        points_used: Optional[int] = None,
        points_discount: Optional[int] = None,
    ) -> RecordReferralResponse:
        if points_used is not None and (
            isinstance(points_used, bool) or not isinstance(points_used, int) or points_used < 0
        ):
            raise InvalidAmount(f"points_used must be zero or positive, got {points_used!r}")

        if self.storage.find_usage(customer_id, order_invoice_id=order_invoice_id):
            raise AlreadyRecorded(customer_id, order_invoice_id)

        referrer, settings = self._check(code, customer_id)

        debit = None
        if points_used:
            description = f"Points redeemed for order {order_invoice_id}"
            if points_discount:
                description += f" (discount {points_discount})"
            debit = PointsChange(
                customer_id=customer_id,
                points_change=-points_used,
                transaction_type=TransactionType.REDEEMED,
                reference_type=ReferenceType.ORDER_REDEMPTION,
                reference_id=order_invoice_id,
                description=description,
            )

        points_awarded = settings.referrer_points_earned
        credit = None
        if points_awarded > 0:
            credit = PointsChange(
                customer_id=referrer.customer_id,
                points_change=points_awarded,
                transaction_type=TransactionType.EARNED,
                reference_type=ReferenceType.REFERRAL,
                reference_id=order_invoice_id,
                description=f"Referral bonus from customer {customer_id}",
            )

        try:
            usage, referrer_account, redeemer_account = self.storage.record_referral_usage(
                referral_code=code,
                referrer_customer_id=referrer.customer_id,
                referred_customer_id=customer_id,
                order_invoice_id=order_invoice_id,
                discount_applied=settings.referral_discount_amount,
                points_awarded=points_awarded,
                credit=credit,
                debit=debit,
            )
        except PointsLedgerError as e:
            logger.warning("Referral %s not recorded for %s on %s: %s", code, customer_id, order_invoice_id, e)
            raise
        logger.info(
            "Referral %s recorded for %s on %s: referrer %s awarded %d points, %d points redeemed",
            code, customer_id, order_invoice_id, referrer.customer_id, points_awarded, points_used or 0,
        )

        response = RecordReferralResponse(
            success=True,
            usage=usage,
            points_awarded=points_awarded,
            referrer_new_balance=referrer_account.current_balance,
        )
        if redeemer_account is not None:
            response.points_deducted = points_used
            response.new_balance = redeemer_account.current_balance
        return response

    def _check(self, code: str, customer_id: str) -> tuple[Customer, ReferralSettings]:
        referrer = self.storage.find_customer_by_code(code)
        if referrer is None:
            raise ReferralInvalid(ReferralRejection.CODE_NOT_FOUND)
        if referrer.customer_id == customer_id:
            raise ReferralInvalid(ReferralRejection.SELF_REFERRAL)
        if self.storage.find_usage(customer_id, referral_code=code):
            raise ReferralInvalid(ReferralRejection.ALREADY_USED)

        settings = self._resolve_settings()
        if not settings.is_active:
            raise ReferralInvalid(ReferralRejection.SETTINGS_UNAVAILABLE)
        return referrer, settings

    def _resolve_settings(self) -> ReferralSettings:
        try:
            return self.settings.fetch_settings()
        except StorageUnavailable:
            if not self.fallback_on_error:
                raise ReferralInvalid(ReferralRejection.SETTINGS_UNAVAILABLE, SETTINGS_UNREACHABLE_MESSAGE)
            logger.warning("Referral settings unreachable, validating against defaults")
            return default_settings()

    # -----------------------------
    # Points redemption
    # -----------------------------
    def validate_points_redemption(self, customer_id: str, points_to_redeem: int) -> PointsRedemptionResult:
        points = require_positive_points(points_to_redeem)
        settings = self.settings.get_settings()
        current_balance = self.balance.get_balance(customer_id).current_balance

        if current_balance < settings.points_redemption_minimum:
            raise BelowMinimum(settings.points_redemption_minimum, current_balance)
        if points > current_balance:
            raise InsufficientBalance(customer_id, points, current_balance)

        # Capping against the order total is left to checkout.
        return PointsRedemptionResult(
            valid=True,
            points_to_redeem=points,
            max_redeemable=current_balance,
            discount_value=points * settings.points_redemption_value,
        )

    def deduct_points(self, customer_id: str, points: int, order_invoice_id: str) -> PointsMutationResponse:
        account, entry = self.balance.debit(
            customer_id,
            points,
            PointsReference(
                type=ReferenceType.ORDER_REDEMPTION,
                id=order_invoice_id,
                description=f"Points redeemed for order {order_invoice_id}",
            ),
        )
        return PointsMutationResponse(success=True, new_balance=account.current_balance, transaction=entry)
