"""
Relational storage backend (SQLAlchemy 2.0).

Tables:
1) customers            - referral code directory (owned externally)
2) customer_points      - one row per customer, balance + lifetime aggregates
3) points_transactions  - append-only log, id order is log order
4) referral_usage       - unique per (referred, invoice) and (referred, code)
5) referral_settings    - single logical record

Balance changes are evaluated server side: the UPDATE adds the delta to the
stored balance and only matches while the result stays non-negative, so two
concurrent debits cannot both spend the same points. The account update and
the log insert share one transaction, as do a referral usage, the referrer
credit and any points the referred customer spends on that order.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Union

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Engine,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Boolean,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import (
    AlreadyRecorded,
    InsufficientBalance,
    PointsLedgerError,
    ReferralCodeTaken,
    ReferralInvalid,
    StorageUnavailable,
)
from .models import (
    Customer,
    CustomerPointsAccount,
    PointsChange,
    PointsTransaction,
    ReferralRejection,
    ReferralSettings,
    ReferralUsage,
)
from .storage import SETTINGS_FIELDS, utcnow

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class CustomerRow(Base):
    __tablename__ = "customers"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    referral_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)


class AccountRow(Base):
    __tablename__ = "customer_points"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_customer_points_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    current_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_redeemed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TransactionRow(Base):
    __tablename__ = "points_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReferralUsageRow(Base):
    __tablename__ = "referral_usage"
    __table_args__ = (
        UniqueConstraint("referred_customer_id", "order_invoice_id", name="uq_referral_usage_order"),
        UniqueConstraint("referred_customer_id", "referral_code", name="uq_referral_usage_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    referrer_customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    referred_customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    discount_applied: Mapped[int] = mapped_column(Integer, nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SettingsRow(Base):
    __tablename__ = "referral_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    referrer_points_earned: Mapped[int] = mapped_column(Integer, nullable=False)
    points_redemption_minimum: Mapped[int] = mapped_column(Integer, nullable=False)
    points_redemption_value: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


TABLES = {
    "customers": CustomerRow,
    "customer_points": AccountRow,
    "points_transactions": TransactionRow,
    "referral_usage": ReferralUsageRow,
    "referral_settings": SettingsRow,
}


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases live on one shared connection
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class SqlStorage:
    backend = "sql"

    def __init__(self, database: Union[str, Engine], *, echo: bool = False):
        self.engine = database if isinstance(database, Engine) else build_engine(database, echo=echo)
        self.session_factory = sessionmaker(
            self.engine,
            expire_on_commit=False,
            autoflush=False,
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except PointsLedgerError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Storage operation failed: %s", e)
            raise StorageUnavailable(f"Storage operation failed: {e.__class__.__name__}") from e
        finally:
            session.close()

    # -----------------------------
    # Customer directory
    # -----------------------------
    def add_customer(self, customer_id: str, referral_code: str) -> Customer:
        with self.session() as session:
            owner = session.scalar(select(CustomerRow).where(CustomerRow.referral_code == referral_code))
            if owner is not None and owner.customer_id != customer_id:
                raise ReferralCodeTaken(referral_code, owner.customer_id)
            row = session.get(CustomerRow, customer_id)
            if row is None:
                row = CustomerRow(customer_id=customer_id, referral_code=referral_code)
                session.add(row)
            else:
                row.referral_code = referral_code
            session.flush()
            return Customer.model_validate(row)

    def find_customer_by_code(self, referral_code: str) -> Optional[Customer]:
        with self.session() as session:
            row = session.scalar(select(CustomerRow).where(CustomerRow.referral_code == referral_code))
            return Customer.model_validate(row) if row else None

    # -----------------------------
    # Accounts + log
    # -----------------------------
    def get_account(self, customer_id: str) -> Optional[CustomerPointsAccount]:
        with self.session() as session:
            row = session.scalar(select(AccountRow).where(AccountRow.customer_id == customer_id))
            return CustomerPointsAccount.model_validate(row) if row else None

    def list_accounts(self, offset: int = 0, limit: int = 10) -> tuple[list[CustomerPointsAccount], int]:
        with self.session() as session:
            total = session.scalar(select(func.count()).select_from(AccountRow)) or 0
            rows = session.scalars(
                select(AccountRow)
                .order_by(AccountRow.current_balance.desc(), AccountRow.id)
                .offset(offset)
                .limit(limit)
            ).all()
            return [CustomerPointsAccount.model_validate(r) for r in rows], total

    def apply_change(self, change: PointsChange) -> tuple[CustomerPointsAccount, PointsTransaction]:
        with self.session() as session:
            return self._apply(session, change)

    def _ensure_account(self, session: Session, customer_id: str, now: datetime) -> None:
        values = {
            "customer_id": customer_id,
            "current_balance": 0,
            "total_earned": 0,
            "total_redeemed": 0,
            "created_at": now,
            "updated_at": now,
        }
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(AccountRow).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(AccountRow).values(**values)
        else:
            # The unique index still rejects a racing duplicate here.
            exists = session.scalar(select(AccountRow.id).where(AccountRow.customer_id == customer_id))
            if exists is None:
                session.add(AccountRow(**values))
                session.flush()
            return
        session.execute(stmt.on_conflict_do_nothing(index_elements=["customer_id"]))

    def _apply(self, session: Session, change: PointsChange) -> tuple[CustomerPointsAccount, PointsTransaction]:
        now = utcnow()
        delta = change.points_change
        if delta > 0:
            self._ensure_account(session, change.customer_id, now)

        result = session.execute(
            update(AccountRow)
            .where(
                AccountRow.customer_id == change.customer_id,
                AccountRow.current_balance + delta >= 0,
            )
            .values(
                current_balance=AccountRow.current_balance + delta,
                total_earned=AccountRow.total_earned + max(delta, 0),
                total_redeemed=AccountRow.total_redeemed + max(-delta, 0),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = session.scalar(
                select(AccountRow.current_balance).where(AccountRow.customer_id == change.customer_id)
            )
            raise InsufficientBalance(change.customer_id, -delta, current or 0)

        account = session.scalars(
            select(AccountRow)
            .where(AccountRow.customer_id == change.customer_id)
            .execution_options(populate_existing=True)
        ).one()

        entry = TransactionRow(
            customer_id=change.customer_id,
            transaction_type=change.transaction_type.value,
            points_change=delta,
            balance_after=account.current_balance,
            reference_type=change.reference_type.value,
            reference_id=change.reference_id,
            description=change.description,
            created_at=now,
        )
        session.add(entry)
        session.flush()
        return CustomerPointsAccount.model_validate(account), PointsTransaction.model_validate(entry)

    def list_transactions(
        self, customer_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[PointsTransaction], int]:
        with self.session() as session:
            count_stmt = select(func.count()).select_from(TransactionRow)
            stmt = select(TransactionRow).order_by(TransactionRow.id.desc())
            if customer_id is not None:
                count_stmt = count_stmt.where(TransactionRow.customer_id == customer_id)
                stmt = stmt.where(TransactionRow.customer_id == customer_id)
            total = session.scalar(count_stmt) or 0
            rows = session.scalars(stmt.offset(offset).limit(limit)).all()
            return [PointsTransaction.model_validate(r) for r in rows], total

    # -----------------------------
    # Referral usage
    # -----------------------------
    @staticmethod
    def _find_usage(
        session: Session,
        referred_customer_id: str,
        order_invoice_id: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Optional[ReferralUsageRow]:
        stmt = select(ReferralUsageRow).where(ReferralUsageRow.referred_customer_id == referred_customer_id)
        if order_invoice_id is not None:
            stmt = stmt.where(ReferralUsageRow.order_invoice_id == order_invoice_id)
        if referral_code is not None:
            stmt = stmt.where(ReferralUsageRow.referral_code == referral_code)
        return session.scalars(stmt.limit(1)).first()

    def find_usage(
        self,
        referred_customer_id: str,
        *,
        order_invoice_id: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Optional[ReferralUsage]:
        with self.session() as session:
            row = self._find_usage(session, referred_customer_id, order_invoice_id, referral_code)
            return ReferralUsage.model_validate(row) if row else None

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
        with self.session() as session:
            if self._find_usage(session, referred_customer_id, order_invoice_id=order_invoice_id):
                raise AlreadyRecorded(referred_customer_id, order_invoice_id)
            if self._find_usage(session, referred_customer_id, referral_code=referral_code):
                raise ReferralInvalid(ReferralRejection.ALREADY_USED)

            usage = ReferralUsageRow(
                referral_code=referral_code,
                referrer_customer_id=referrer_customer_id,
                referred_customer_id=referred_customer_id,
                order_invoice_id=order_invoice_id,
                discount_applied=discount_applied,
                points_awarded=points_awarded,
                used_at=utcnow(),
            )
            session.add(usage)
            try:
                session.flush()
            except IntegrityError:
                # A concurrent request inserted first; report which constraint it took.
                session.rollback()
                if self._find_usage(session, referred_customer_id, order_invoice_id=order_invoice_id):
                    raise AlreadyRecorded(referred_customer_id, order_invoice_id)
                raise ReferralInvalid(ReferralRejection.ALREADY_USED)

            # Account rows are locked in customer_id order.
            account = redeemer = None
            for change in sorted((c for c in (credit, debit) if c is not None), key=lambda c: c.customer_id):
                updated, _ = self._apply(session, change)
                if change is credit:
                    account = updated
                else:
                    redeemer = updated

            if account is None:
                row = session.scalar(select(AccountRow).where(AccountRow.customer_id == referrer_customer_id))
                account = (
                    CustomerPointsAccount.model_validate(row)
                    if row
                    else CustomerPointsAccount.empty(referrer_customer_id)
                )
            return ReferralUsage.model_validate(usage), account, redeemer

    def list_usages(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[ReferralUsage]:
        with self.session() as session:
            stmt = select(ReferralUsageRow).order_by(ReferralUsageRow.id.desc())
            if start is not None:
                stmt = stmt.where(ReferralUsageRow.used_at >= start)
            if end is not None:
                stmt = stmt.where(ReferralUsageRow.used_at <= end)
            return [ReferralUsage.model_validate(r) for r in session.scalars(stmt).all()]

    # -----------------------------
    # Settings
    # -----------------------------
    def get_settings_record(self) -> Optional[ReferralSettings]:
        with self.session() as session:
            row = session.scalars(select(SettingsRow).order_by(SettingsRow.id).limit(1)).first()
            return ReferralSettings.model_validate(row) if row else None

    def save_settings(self, fields: dict[str, Any]) -> ReferralSettings:
        with self.session() as session:
            now = utcnow()
            row = session.scalars(
                select(SettingsRow).order_by(SettingsRow.id).limit(1).with_for_update()
            ).first()
            if row is None:
                defaults = ReferralSettings()
                row = SettingsRow(
                    **{key: getattr(defaults, key) for key in SETTINGS_FIELDS},
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            for key in SETTINGS_FIELDS:
                if fields.get(key) is not None:
                    setattr(row, key, fields[key])
            row.updated_at = now
            session.flush()
            return ReferralSettings.model_validate(row)

    # -----------------------------
    # Health
    # -----------------------------
    def health(self) -> dict[str, str]:
        tables = {}
        for name, model in TABLES.items():
            try:
                with self.engine.connect() as conn:
                    conn.execute(select(func.count()).select_from(model.__table__))
                tables[name] = "exists"
            except SQLAlchemyError as e:
                logger.warning("Health check failed for table %s: %s", name, e)
                tables[name] = "missing"
        return tables
