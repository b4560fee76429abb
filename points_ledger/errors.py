from typing import Optional

from .models import REJECTION_MESSAGES, ReferralRejection


class PointsLedgerError(Exception):
    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidAmount(PointsLedgerError):
    code = "invalid_amount"


class InsufficientBalance(PointsLedgerError):
    code = "insufficient_balance"

    def __init__(self, customer_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient points balance for {customer_id}: requested {requested}, available {available}"
        )
        self.customer_id = customer_id
        self.requested = requested
        self.available = available


class BelowMinimum(PointsLedgerError):
    code = "below_minimum"

    def __init__(self, minimum: int, current_balance: int):
        super().__init__(f"Minimum {minimum} points required to redeem (current balance {current_balance})")
        self.minimum = minimum
        self.current_balance = current_balance


class AlreadyRecorded(PointsLedgerError):
    code = "already_recorded"

    def __init__(self, customer_id: str, order_invoice_id: str):
        super().__init__(f"Referral already recorded for customer {customer_id} on order {order_invoice_id}")
        self.customer_id = customer_id
        self.order_invoice_id = order_invoice_id


class ReferralInvalid(PointsLedgerError):
    code = "referral_invalid"

    def __init__(self, reason: ReferralRejection, message: Optional[str] = None):
        super().__init__(message or REJECTION_MESSAGES[reason])
        self.reason = reason

    def to_dict(self) -> dict:
        return {"code": self.code, "reason": self.reason.value, "message": self.message}


class StorageUnavailable(PointsLedgerError):
    code = "storage_unavailable"


class ReferralCodeTaken(PointsLedgerError):
    code = "referral_code_taken"

    def __init__(self, referral_code: str, owner_customer_id: str):
        super().__init__(f"Referral code {referral_code} already belongs to {owner_customer_id}")
        self.referral_code = referral_code
        self.owner_customer_id = owner_customer_id
