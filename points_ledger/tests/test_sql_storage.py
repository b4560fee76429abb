"""
Tests for the SQLAlchemy storage backend, against in-memory and file SQLite.
"""

import threading

import pytest

from points_ledger.errors import (
    AlreadyRecorded,
    InsufficientBalance,
    ReferralCodeTaken,
    ReferralInvalid,
    StorageUnavailable,
)
from points_ledger.models import ReferenceType, ReferralRejection, TransactionType
from points_ledger.service import PointsLedgerService
from points_ledger.sql_storage import SqlStorage


REFERRER_ID = "cust_referrer"
REFERRAL_CODE = "ABC123"
CUSTOMER_ID = "cust_new"


def make_service() -> PointsLedgerService:
    storage = SqlStorage("sqlite://")
    storage.create_all()
    service = PointsLedgerService(storage)
    service.register_customer(REFERRER_ID, REFERRAL_CODE)
    service.register_customer(CUSTOMER_ID)
    return service


class TestSqlBalances:
    def test_credit_debit_round(self):
        service = make_service()

        service.adjust_points(CUSTOMER_ID, 50)
        response = service.referrals.deduct_points(CUSTOMER_ID, 30, "INV-002")

        assert response.new_balance == 20
        balance = service.get_balance(CUSTOMER_ID)
        assert (balance.current_balance, balance.total_earned, balance.total_redeemed) == (20, 50, 30)

        history = service.balance.get_transactions(CUSTOMER_ID)
        assert history.total_count == 2
        assert [e.points_change for e in history.entries] == [-30, 50]
        assert history.entries[0].transaction_type == TransactionType.REDEEMED
        assert history.entries[0].balance_after == 20

    def test_overdraft_rejected_without_side_effects(self):
        service = make_service()
        service.adjust_points(CUSTOMER_ID, 20)

        with pytest.raises(InsufficientBalance) as exc:
            service.referrals.deduct_points(CUSTOMER_ID, 25, "INV-003")

        assert exc.value.available == 20
        assert service.get_balance(CUSTOMER_ID).current_balance == 20
        assert service.balance.get_transactions(CUSTOMER_ID).total_count == 1

    def test_debit_without_account(self):
        service = make_service()

        with pytest.raises(InsufficientBalance):
            service.referrals.deduct_points("ghost", 1, "INV-004")

        assert service.storage.get_account("ghost") is None

    def test_list_accounts_by_balance(self):
        service = make_service()
        service.adjust_points("a", 5)
        service.adjust_points("b", 50)
        service.adjust_points("c", 20)

        listing = service.list_accounts(page=1, limit=2)

        assert [a.customer_id for a in listing.accounts] == ["b", "c"]
        assert listing.pagination.total == 3
        assert listing.pagination.pages == 2


class TestSqlConcurrency:
    """Racing requests against a file database, one connection per thread."""

    @staticmethod
    def make_file_service(tmp_path) -> PointsLedgerService:
        storage = SqlStorage(f"sqlite:///{tmp_path / 'ledger.db'}")
        storage.create_all()
        return PointsLedgerService(storage)

    @staticmethod
    def race(target, count: int) -> list:
        barrier = threading.Barrier(count)
        outcomes = []

        def run():
            barrier.wait()
            try:
                target()
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=run) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_two_racing_debits_one_wins(self, tmp_path):
        service = self.make_file_service(tmp_path)
        service.adjust_points("cust_2", 100)

        outcomes = self.race(lambda: service.referrals.deduct_points("cust_2", 60, "INV-RACE"), 2)

        assert sorted(outcomes) == ["insufficient", "ok"]
        history = service.balance.get_transactions("cust_2")
        assert history.current_balance == 40
        assert sum(e.points_change for e in history.entries) == 40
        assert [e.transaction_type for e in history.entries].count(TransactionType.REDEEMED) == 1

    def test_racing_first_credits_create_one_account(self, tmp_path):
        service = self.make_file_service(tmp_path)

        outcomes = self.race(lambda: service.adjust_points("cust_fresh", 10), 5)

        assert outcomes == ["ok"] * 5
        listing = service.list_accounts(page=1, limit=10)
        assert listing.pagination.total == 1
        account = listing.accounts[0]
        assert (account.customer_id, account.current_balance, account.total_earned) == ("cust_fresh", 50, 50)
        assert service.balance.get_transactions("cust_fresh").total_count == 5


class TestSqlReferrals:
    def test_record_and_single_use(self):
        service = make_service()

        response = service.referrals.record_referral_usage(REFERRAL_CODE, CUSTOMER_ID, "INV-001")

        assert response.referrer_new_balance == 10
        assert response.usage.order_invoice_id == "INV-001"
        entry = service.balance.get_transactions(REFERRER_ID).entries[0]
        assert entry.reference_type == ReferenceType.REFERRAL

        with pytest.raises(AlreadyRecorded):
            service.referrals.record_referral_usage(REFERRAL_CODE, CUSTOMER_ID, "INV-001")
        with pytest.raises(ReferralInvalid) as exc:
            service.referrals.record_referral_usage(REFERRAL_CODE, CUSTOMER_ID, "INV-009")
        assert exc.value.reason == ReferralRejection.ALREADY_USED
        assert service.get_balance(REFERRER_ID).current_balance == 10

    def test_storage_level_duplicate_guard(self):
        """The storage call itself refuses a second usage, whatever the caller checked."""
        service = make_service()
        kwargs = dict(
            referral_code=REFERRAL_CODE,
            referrer_customer_id=REFERRER_ID,
            referred_customer_id=CUSTOMER_ID,
            discount_applied=5000,
            points_awarded=0,
            credit=None,
        )
        service.storage.record_referral_usage(order_invoice_id="INV-001", **kwargs)

        with pytest.raises(AlreadyRecorded):
            service.storage.record_referral_usage(order_invoice_id="INV-001", **kwargs)
        with pytest.raises(ReferralInvalid):
            service.storage.record_referral_usage(order_invoice_id="INV-002", **kwargs)

    def test_spend_landing_before_record_rolls_back_everything(self, monkeypatch):
        service = make_service()
        service.adjust_points(CUSTOMER_ID, 60)
        record = service.storage.record_referral_usage

        def spend_first(**kwargs):
            service.referrals.deduct_points(CUSTOMER_ID, 30, "INV-OTHER")
            return record(**kwargs)

        monkeypatch.setattr(service.storage, "record_referral_usage", spend_first)

        with pytest.raises(InsufficientBalance):
            service.referrals.record_referral_usage(REFERRAL_CODE, CUSTOMER_ID, "INV-001", points_used=50)

        assert service.storage.find_usage(CUSTOMER_ID, order_invoice_id="INV-001") is None
        assert service.get_balance(REFERRER_ID).current_balance == 0
        assert service.get_balance(CUSTOMER_ID).current_balance == 30
        assert service.balance.get_transactions(REFERRER_ID).total_count == 0

    def test_record_with_points_used(self):
        service = make_service()
        service.adjust_points(CUSTOMER_ID, 100)

        response = service.referrals.record_referral_usage(
            REFERRAL_CODE, CUSTOMER_ID, "INV-001", points_used=60, points_discount=6000
        )

        assert response.points_deducted == 60
        assert response.new_balance == 40
        assert response.referrer_new_balance == 10

    def test_referral_code_taken(self):
        service = make_service()

        with pytest.raises(ReferralCodeTaken):
            service.register_customer("cust_other", REFERRAL_CODE)

    def test_analytics(self):
        service = make_service()
        service.referrals.record_referral_usage(REFERRAL_CODE, CUSTOMER_ID, "INV-001")
        service.referrals.record_referral_usage(REFERRAL_CODE, "cust_third", "INV-002")

        analytics = service.referral_analytics()

        assert analytics.summary.total_referrals == 2
        assert analytics.summary.total_points_awarded == 20
        assert analytics.summary.total_referral_discount == 10000
        assert analytics.top_referrers[0].referrer_customer_id == REFERRER_ID
        assert analytics.top_referrers[0].referral_count == 2


class TestSqlSettings:
    def test_save_and_read(self):
        service = make_service()

        assert service.settings.get_settings().id == 0
        first = service.settings.update_settings({"referrer_points_earned": 15})
        second = service.settings.update_settings({"is_active": False})

        assert first.id == second.id
        assert second.referrer_points_earned == 15
        assert second.is_active is False
        assert service.settings.get_settings().is_active is False


class TestSqlHealth:
    def test_healthy(self):
        service = make_service()

        report = service.health()

        assert report.status == "healthy"
        assert report.backend == "sql"
        assert set(report.tables) == {
            "customers", "customer_points", "points_transactions", "referral_usage", "referral_settings",
        }

    def test_missing_tables(self):
        storage = SqlStorage("sqlite://")
        service = PointsLedgerService(storage)

        report = service.health()

        assert report.status == "unhealthy"
        assert "customer_points table not found" in report.issues

    def test_missing_tables_surface_as_unavailable(self):
        storage = SqlStorage("sqlite://")
        service = PointsLedgerService(storage)

        with pytest.raises(StorageUnavailable):
            storage.get_account(CUSTOMER_ID)
        # Balance reads degrade instead of failing
        assert service.get_balance(CUSTOMER_ID).current_balance == 0
        assert service.settings.get_settings().referral_discount_amount == 5000


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
