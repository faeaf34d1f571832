"""SQLAlchemy-backed storage for users, wallets, transactions and referrals."""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Numeric, String, TypeDecorator, Uuid, create_engine, func, or_,
    Enum as SQLEnum,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import DuplicateReferralCode, PersistenceConflict
from .models import (
    AMOUNT_PRECISION, AMOUNT_SCALE, REFERRAL_CODE_MAX_LENGTH,
    Admin, Referral, Transaction, TransactionType, User, Wallet,
)
from .storage import Storage, utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class ExactAmount(TypeDecorator):
    """NUMERIC(28, 10) that round-trips exactly on every backend.

    SQLite has no decimal type and would store NUMERIC as a float, so there
    the value is kept as its plain decimal string instead.
    """

    impl = Numeric(AMOUNT_PRECISION, AMOUNT_SCALE)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(AMOUNT_PRECISION + 8))
        return dialect.type_descriptor(Numeric(AMOUNT_PRECISION, AMOUNT_SCALE, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


# Crypto balances need more precision than fiat cents.
AMOUNT = ExactAmount()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    external_id = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    image_url = Column(String(1024), nullable=True)
    referral_code = Column(String(REFERRAL_CODE_MAX_LENGTH), unique=True, index=True, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WalletRow(Base):
    __tablename__ = "wallets"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    currency = Column(String(128), nullable=False)
    balance = Column(AMOUNT, nullable=False, default=Decimal("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    wallet_id = Column(Uuid, ForeignKey("wallets.id"), index=True, nullable=False)
    type = Column(SQLEnum(TransactionType, name="transaction_type"), nullable=False)
    amount = Column(AMOUNT, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ReferralRow(Base):
    __tablename__ = "referrals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    referrer_id = Column(Uuid, ForeignKey("users.id"), index=True, nullable=False)
    # One referrer per referee.
    referee_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    balance = Column(AMOUNT, nullable=False, default=Decimal("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AdminRow(Base):
    __tablename__ = "admins"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


def create_sql_engine(database_url: str):
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


class SqlStorage(Storage):
    def __init__(self, database_url: str, create_tables: bool = True):
        self.engine = create_sql_engine(database_url)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._local = threading.local()
        if create_tables:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables verified/created.")

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        session = self.session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise PersistenceConflict(str(e.orig)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self):
        with self.atomic():
            yield self._local.session

    def _flush(self, session) -> None:
        try:
            session.flush()
        except IntegrityError as e:
            raise PersistenceConflict(str(e.orig)) from e

    def add_user(self, data: dict) -> User:
        with self._session() as session:
            if session.query(UserRow).filter(UserRow.referral_code == data["referral_code"]).first():
                raise DuplicateReferralCode("Referral code already exists")
            row = UserRow(**data)
            session.add(row)
            self._flush(session)
            return User.model_validate(row)

    def get_user(self, user_id: UUID) -> Optional[User]:
        with self._session() as session:
            row = session.get(UserRow, user_id)
            return User.model_validate(row) if row else None

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._session() as session:
            row = session.query(UserRow).filter(UserRow.external_id == external_id).first()
            return User.model_validate(row) if row else None

    def get_user_by_referral_code(self, code: str) -> Optional[User]:
        with self._session() as session:
            row = session.query(UserRow).filter(UserRow.referral_code == code).first()
            return User.model_validate(row) if row else None

    def update_user(self, user_id: UUID, changes: dict) -> User:
        with self._session() as session:
            row = session.get(UserRow, user_id)
            new_code = changes.get("referral_code")
            if new_code is not None and new_code != row.referral_code:
                owner = session.query(UserRow).filter(UserRow.referral_code == new_code).first()
                if owner is not None:
                    raise DuplicateReferralCode("Referral code already exists")
            for key, value in changes.items():
                setattr(row, key, value)
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateReferralCode("Referral code already exists") from e
            return User.model_validate(row)

    def list_users(self, search: str = "", offset: int = 0, limit: int = 10) -> tuple[list[User], int]:
        with self._session() as session:
            query = session.query(UserRow)
            needle = search.strip().lower()
            if needle:
                pattern = f"%{needle}%"
                query = query.filter(or_(
                    func.lower(UserRow.email).like(pattern),
                    func.lower(UserRow.first_name).like(pattern),
                    func.lower(UserRow.last_name).like(pattern),
                    func.lower(UserRow.external_id).like(pattern),
                ))
            total = query.count()
            rows = query.order_by(UserRow.created_at.desc()).offset(offset).limit(limit).all()
            return [User.model_validate(r) for r in rows], total

    def add_wallet(self, data: dict) -> Wallet:
        with self._session() as session:
            row = WalletRow(**data)
            session.add(row)
            self._flush(session)
            return Wallet.model_validate(row)

    def get_wallet(self, wallet_id: UUID, for_update: bool = False) -> Optional[Wallet]:
        with self._session() as session:
            query = session.query(WalletRow).filter(WalletRow.id == wallet_id)
            if for_update:
                query = query.with_for_update()
            row = query.first()
            return Wallet.model_validate(row) if row else None

    def list_wallets(self, user_id: UUID) -> list[Wallet]:
        with self._session() as session:
            rows = session.query(WalletRow).filter(WalletRow.user_id == user_id).order_by(WalletRow.created_at).all()
            return [Wallet.model_validate(r) for r in rows]

    def apply_balance_delta(self, wallet_id: UUID, delta: Decimal) -> Wallet:
        with self._session() as session:
            row = session.query(WalletRow).filter(WalletRow.id == wallet_id).with_for_update().one()
            row.balance = Decimal(row.balance) + delta
            self._flush(session)
            return Wallet.model_validate(row)

    def add_transaction(self, data: dict) -> Transaction:
        with self._session() as session:
            row = TransactionRow(**data)
            session.add(row)
            self._flush(session)
            return Transaction.model_validate(row)

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._session() as session:
            row = session.get(TransactionRow, transaction_id)
            return Transaction.model_validate(row) if row else None

    def list_transactions(self, wallet_id: UUID) -> list[Transaction]:
        with self._session() as session:
            rows = (
                session.query(TransactionRow)
                .filter(TransactionRow.wallet_id == wallet_id)
                .order_by(TransactionRow.created_at)
                .all()
            )
            return [Transaction.model_validate(r) for r in rows]

    def delete_transaction(self, transaction_id: UUID) -> None:
        with self._session() as session:
            row = session.get(TransactionRow, transaction_id)
            if row is not None:
                session.delete(row)
                self._flush(session)

    def count_user_transactions(self, user_id: UUID) -> int:
        with self._session() as session:
            return (
                session.query(TransactionRow)
                .join(WalletRow, TransactionRow.wallet_id == WalletRow.id)
                .filter(WalletRow.user_id == user_id)
                .count()
            )

    def add_referral(self, data: dict) -> Referral:
        with self._session() as session:
            row = ReferralRow(**data)
            session.add(row)
            self._flush(session)
            return Referral.model_validate(row)

    def list_referrals(self, referrer_id: Optional[UUID] = None, referee_id: Optional[UUID] = None) -> list[Referral]:
        with self._session() as session:
            query = session.query(ReferralRow)
            if referrer_id is not None:
                query = query.filter(ReferralRow.referrer_id == referrer_id)
            if referee_id is not None:
                query = query.filter(ReferralRow.referee_id == referee_id)
            return [Referral.model_validate(r) for r in query.order_by(ReferralRow.created_at).all()]

    def set_referral_balance(self, referral_id: UUID, balance: Decimal) -> Referral:
        with self._session() as session:
            row = session.query(ReferralRow).filter(ReferralRow.id == referral_id).with_for_update().one()
            row.balance = balance
            self._flush(session)
            return Referral.model_validate(row)

    def add_admin(self, data: dict) -> Admin:
        with self._session() as session:
            row = AdminRow(**data)
            session.add(row)
            self._flush(session)
            return Admin.model_validate(row)

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._session() as session:
            row = session.query(AdminRow).filter(AdminRow.email == email).first()
            return Admin.model_validate(row) if row else None
