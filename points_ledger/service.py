import logging
import math
from datetime import datetime
from typing import Optional

from .balance import BalanceStore
from .config import LedgerSettings
from .models import (
    AccountListResponse,
    AnalyticsSummary,
    BalanceResponse,
    Customer,
    HealthReport,
    Pagination,
    PointsMutationResponse,
    ReferralAnalytics,
    TopReferrer,
    TransactionType,
)
from .referral import ReferralValidator
from .referral_settings import SettingsResolver
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def create_storage(config: LedgerSettings):
    if not config.database_url:
        logger.info("No database configured, using in-memory points storage")
        return InMemoryStorage()

    from .sql_storage import SqlStorage

    storage = SqlStorage(config.database_url, echo=config.sql_echo)
    storage.create_all()
    return storage


class PointsLedgerService:
    """Request-scoped facade over the ledger components.

    Holds no state of its own; everything lives in ``storage``. Concurrent
    requests share nothing but the storage handle.
    """

    def __init__(self, storage, *, fallback_on_error: bool = True):
        self.storage = storage
        self.settings = SettingsResolver(storage)
        self.balance = BalanceStore(storage)
        self.referrals = ReferralValidator(
            storage, self.balance, self.settings, fallback_on_error=fallback_on_error
        )

    # -----------------------------
    # Customers
    # -----------------------------
    def register_customer(self, customer_id: str, referral_code: Optional[str] = None) -> Customer:
        customer = self.storage.add_customer(customer_id, referral_code or customer_id)
        logger.info("Registered customer %s with referral code %s", customer.customer_id, customer.referral_code)
        return customer

    # -----------------------------
    # Points
    # -----------------------------
    def get_balance(self, customer_id: str) -> BalanceResponse:
        account = self.balance.get_balance(customer_id)
        return BalanceResponse(
            current_balance=account.current_balance,
            total_earned=account.total_earned,
            total_redeemed=account.total_redeemed,
        )

    def adjust_points(
        self, customer_id: str, points_change: int, description: Optional[str] = None
    ) -> PointsMutationResponse:
        account, entry = self.balance.adjust(customer_id, points_change, description)
        return PointsMutationResponse(success=True, new_balance=account.current_balance, transaction=entry)

    # -----------------------------
    # Reporting
    # -----------------------------
    def list_accounts(self, page: int = 1, limit: int = 10) -> AccountListResponse:
        page = max(page, 1)
        limit = max(limit, 1)
        accounts, total = self.storage.list_accounts(offset=(page - 1) * limit, limit=limit)
        return AccountListResponse(
            accounts=accounts,
            pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        )

    def referral_analytics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> ReferralAnalytics:
        usages = self.storage.list_usages(start, end)
        accounts, account_total = self.storage.list_accounts(offset=0, limit=2**31 - 1)
        transactions, _ = self.storage.list_transactions(None, limit=100, offset=0)

        referrers: dict[str, TopReferrer] = {}
        for usage in usages:
            entry = referrers.setdefault(
                usage.referrer_customer_id,
                TopReferrer(referrer_customer_id=usage.referrer_customer_id, referral_count=0, total_points_earned=0),
            )
            entry.referral_count += 1
            entry.total_points_earned += usage.points_awarded
        top = sorted(referrers.values(), key=lambda r: r.referral_count, reverse=True)[:10]

        summary = AnalyticsSummary(
            total_referrals=len(usages),
            total_referral_discount=sum(u.discount_applied for u in usages),
            total_points_awarded=sum(u.points_awarded for u in usages),
            total_points_redeemed=sum(
                -t.points_change for t in transactions if t.transaction_type == TransactionType.REDEEMED
            ),
            active_customers_with_points=sum(1 for a in accounts if a.current_balance > 0),
            total_customers_with_points=account_total,
        )
        return ReferralAnalytics(
            summary=summary,
            top_referrers=top,
            recent_referrals=usages[:20],
            points_distribution=accounts[:20],
            recent_transactions=transactions[:50],
        )

    def health(self) -> HealthReport:
        try:
            tables = self.storage.health()
        except Exception as e:
            logger.exception("Storage health check failed")
            return HealthReport(status="error", backend=self.storage.backend, issues=[str(e)])

        issues = [f"{name} table not found" for name, state in tables.items() if state != "exists"]
        return HealthReport(
            status="unhealthy" if issues else "healthy",
            backend=self.storage.backend,
            tables=tables,
            issues=issues,
        )
