import itertools
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from .errors import AlreadyRecorded, InsufficientBalance, ReferralCodeTaken, ReferralInvalid
from .models import (
    Customer,
    CustomerPointsAccount,
    PointsChange,
    PointsTransaction,
    ReferralRejection,
    ReferralSettings,
    ReferralUsage,
)


SETTINGS_FIELDS = (
    "referral_discount_amount",
    "referrer_points_earned",
    "points_redemption_minimum",
    "points_redemption_value",
    "is_active",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    """Process-local storage backend.

    Rows are plain dicts keyed the same way the SQL tables are. Every
    balance mutation holds the owning customer's lock for the whole
    read-compute-write-append sequence, so concurrent requests for one
    customer serialize while different customers never contend.

    Lock order: a referred customer's usage lock, then customer locks in
    sorted ``customer_id`` order, then the log lock.
    """

    backend = "memory"

    def __init__(self):
        self.customers: dict[str, dict] = {}
        self.accounts: dict[str, dict] = {}
        self.transactions: list[dict] = []
        self.referral_usages: list[dict] = []
        self.settings: Optional[dict] = None

        self._transaction_ids = itertools.count(1)
        self._usage_ids = itertools.count(1)
        # key -> [lock, holders and waiters]; entries go away when unused
        self._customer_locks: dict[str, list] = {}
        self._usage_locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()
        self._log_lock = threading.Lock()
        self._settings_lock = threading.Lock()
        self._directory_lock = threading.Lock()

    @contextmanager
    def _keyed_lock(self, locks: dict[str, list], key: str) -> Iterator[None]:
        with self._locks_guard:
            entry = locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del locks[key]

    def customer_lock(self, customer_id: str):
        return self._keyed_lock(self._customer_locks, customer_id)

    @contextmanager
    def customer_locks(self, *customer_ids: str) -> Iterator[None]:
        with ExitStack() as stack:
            for customer_id in sorted(set(customer_ids)):
                stack.enter_context(self.customer_lock(customer_id))
            yield

    # -----------------------------
    # Customer directory
    # -----------------------------
    def add_customer(self, customer_id: str, referral_code: str) -> Customer:
        with self._directory_lock:
            for row in self.customers.values():
                if row["referral_code"] == referral_code and row["customer_id"] != customer_id:
                    raise ReferralCodeTaken(referral_code, row["customer_id"])
            self.customers[customer_id] = {"customer_id": customer_id, "referral_code": referral_code}
            return Customer(**self.customers[customer_id])

    def find_customer_by_code(self, referral_code: str) -> Optional[Customer]:
        for row in self.customers.values():
            if row["referral_code"] == referral_code:
                return Customer(**row)
        return None

    # -----------------------------
    # Accounts + log
    # -----------------------------
    def get_account(self, customer_id: str) -> Optional[CustomerPointsAccount]:
        row = self.accounts.get(customer_id)
        return CustomerPointsAccount(**row) if row else None

    def list_accounts(self, offset: int = 0, limit: int = 10) -> tuple[list[CustomerPointsAccount], int]:
        rows = sorted(self.accounts.values(), key=lambda r: r["current_balance"], reverse=True)
        return [CustomerPointsAccount(**r) for r in rows[offset:offset + limit]], len(rows)

    def apply_change(self, change: PointsChange) -> tuple[CustomerPointsAccount, PointsTransaction]:
        with self.customer_lock(change.customer_id):
            return self._apply_locked(change)

    def _apply_locked(self, change: PointsChange) -> tuple[CustomerPointsAccount, PointsTransaction]:
        now = utcnow()
        row = self.accounts.get(change.customer_id)
        current = row["current_balance"] if row else 0
        new_balance = current + change.points_change
        if new_balance < 0:
            raise InsufficientBalance(change.customer_id, -change.points_change, current)

        if row is None:
            row = {
                "customer_id": change.customer_id,
                "current_balance": 0,
                "total_earned": 0,
                "total_redeemed": 0,
                "created_at": now,
                "updated_at": now,
            }

        updated = dict(row)
        updated["current_balance"] = new_balance
        if change.points_change > 0:
            updated["total_earned"] += change.points_change
        else:
            updated["total_redeemed"] += -change.points_change
        updated["updated_at"] = now

        with self._log_lock:
            entry = {
                "id": next(self._transaction_ids),
                "customer_id": change.customer_id,
                "transaction_type": change.transaction_type,
                "points_change": change.points_change,
                "balance_after": new_balance,
                "reference_type": change.reference_type,
                "reference_id": change.reference_id,
                "description": change.description,
                "created_at": now,
            }
            self.transactions.append(entry)
        self.accounts[change.customer_id] = updated

        return CustomerPointsAccount(**updated), PointsTransaction(**entry)

    def list_transactions(
        self, customer_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[PointsTransaction], int]:
        rows = [
            e for e in self.transactions
            if customer_id is None or e["customer_id"] == customer_id
        ]
        rows.sort(key=lambda e: e["id"], reverse=True)
        return [PointsTransaction(**e) for e in rows[offset:offset + limit]], len(rows)

    # -----------------------------
    # Referral usage
    # -----------------------------
    def find_usage(
        self,
        referred_customer_id: str,
        *,
        order_invoice_id: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Optional[ReferralUsage]:
        for row in self.referral_usages:
            if row["referred_customer_id"] != referred_customer_id:
                continue
            if order_invoice_id is not None and row["order_invoice_id"] != order_invoice_id:
                continue
            if referral_code is not None and row["referral_code"] != referral_code:
                continue
            return ReferralUsage(**row)
        return None

    def record_referral_usage(
        self,
        *,
        referral_code: str,
        referrer_customer_id: str,
        referred_customer_id: str,
        order_invoice_id: str,
        discount_applied: int,
        points_awarded: int,
        credit: Optional[PointsChange],
        debit: Optional[PointsChange] = None,
    ) -> tuple[ReferralUsage, CustomerPointsAccount, Optional[CustomerPointsAccount]]:
        """Record a usage, credit the referrer and debit the redeemer as one unit.

        Returns the usage, the referrer's account and, when ``debit`` is
        given, the redeemer's account. Nothing is written if any step fails.
        """
        with self._keyed_lock(self._usage_locks, referred_customer_id):
            if self.find_usage(referred_customer_id, order_invoice_id=order_invoice_id):
                raise AlreadyRecorded(referred_customer_id, order_invoice_id)
            if self.find_usage(referred_customer_id, referral_code=referral_code):
                raise ReferralInvalid(ReferralRejection.ALREADY_USED)

            with self.customer_locks(referrer_customer_id, referred_customer_id):
                # The debit is the only step that can fail; it goes first.
                redeemer = None
                if debit is not None:
                    redeemer, _ = self._apply_locked(debit)
                if credit is not None:
                    account, _ = self._apply_locked(credit)
                else:
                    account = self.get_account(referrer_customer_id) or CustomerPointsAccount.empty(
                        referrer_customer_id
                    )
                with self._log_lock:
                    row = {
                        "id": next(self._usage_ids),
                        "referral_code": referral_code,
                        "referrer_customer_id": referrer_customer_id,
                        "referred_customer_id": referred_customer_id,
                        "order_invoice_id": order_invoice_id,
                        "discount_applied": discount_applied,
                        "points_awarded": points_awarded,
                        "used_at": utcnow(),
                    }
                    self.referral_usages.append(row)

        return ReferralUsage(**row), account, redeemer

    def list_usages(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[ReferralUsage]:
        rows = [
            r for r in self.referral_usages
            if (start is None or r["used_at"] >= start) and (end is None or r["used_at"] <= end)
        ]
        rows.sort(key=lambda r: r["id"], reverse=True)
        return [ReferralUsage(**r) for r in rows]

    # -----------------------------
    # Settings
    # -----------------------------
    def get_settings_record(self) -> Optional[ReferralSettings]:
        return ReferralSettings(**self.settings) if self.settings else None

    def save_settings(self, fields: dict[str, Any]) -> ReferralSettings:
        with self._settings_lock:
            now = utcnow()
            if self.settings is None:
                row = ReferralSettings(id=1, created_at=now).model_dump()
            else:
                row = dict(self.settings)
            for key in SETTINGS_FIELDS:
                if fields.get(key) is not None:
                    row[key] = fields[key]
            row["updated_at"] = now
            self.settings = row
            return ReferralSettings(**row)

    # -----------------------------
    # Health
    # -----------------------------
    def health(self) -> dict[str, str]:
        return {
            "customers": "exists",
            "customer_points": "exists",
            "points_transactions": "exists",
            "referral_usage": "exists",
            "referral_settings": "exists",
        }
