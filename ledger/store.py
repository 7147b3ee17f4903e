"""
Persistence layer shared by the ledger and payout services.

Tables:
- ledger_entries: append-only money movements
- payouts: one row per withdrawal request
- bank_accounts: the payout destination registered by each user
- list_owners: registry list id -> owning user id
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import DuplicateEntryError, StorageError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)
    kind: Mapped[str] = mapped_column(String(10))
    amount: Mapped[int] = mapped_column(BigInteger)
    reason: Mapped[str] = mapped_column(String(40))
    payout_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    # Only set for CONTRIBUTION_RECEIVED entries; NULLs never collide
    contribution_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("uq_ledger_contribution_order", "contribution_order_id", unique=True),
    )


@event.listens_for(LedgerEntryRow, "before_update")
@event.listens_for(LedgerEntryRow, "before_delete")
def _reject_ledger_rewrite(mapper, connection, target):
    raise StorageError(f"Ledger entry {target.id} is immutable")


class PayoutRow(Base):
    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    fee: Mapped[int] = mapped_column(BigInteger, default=0)
    net_amount: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String(20), index=True)
    destination_account: Mapped[dict] = mapped_column(JSON)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manual_review_required: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class BankAccountRow(Base):
    __tablename__ = "bank_accounts"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    account: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ListOwnerRow(Base):
    __tablename__ = "list_owners"

    list_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, index=True)


class UserLocks:
    """One lock per user id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def get(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock


class Store:
    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.user_locks = UserLocks()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session; nothing is committed."""
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Run a block in one database transaction.

        With an existing ``session`` the block joins it and the caller stays
        responsible for committing. Otherwise a new session is opened,
        committed when the block finishes and rolled back on any error.
        Callables queued with ``after_commit`` run once the commit succeeded.
        """
        if session is not None:
            yield session
            return

        session = self.session_factory()
        session.info["after_commit"] = []
        try:
            with session.begin():
                yield session
        except IntegrityError as exc:
            logger.warning("Integrity violation, transaction rolled back: %s", exc.orig)
            raise DuplicateEntryError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.exception("Storage failure, transaction rolled back")
            raise StorageError("Failed to write to the ledger store") from exc
        else:
            for callback in session.info["after_commit"]:
                callback()
        finally:
            session.close()

    @staticmethod
    def after_commit(session: Session, callback: Callable[[], None]) -> None:
        """Queue ``callback`` for when the outermost transaction commits."""
        callbacks = session.info.get("after_commit")
        if callbacks is None:
            # Session not opened through transaction(): nothing to wait for
            callback()
        else:
            callbacks.append(callback)

    def user_lock(self, user_id: int) -> threading.Lock:
        """In-process lock serializing writers for one user."""
        return self.user_locks.get(user_id)

    def lock_user_rows(self, session: Session, user_id: int) -> None:
        """Extend the per-user lock to other processes where the database allows it."""
        if self.dialect == "postgresql":
            session.execute(select(func.pg_advisory_xact_lock(user_id)))

    # Bank accounts and list owners are small lookups kept next to the tables.

    def get_bank_account(self, user_id: int, session: Optional[Session] = None) -> Optional[dict]:
        if session is not None:
            row = session.get(BankAccountRow, user_id)
            return dict(row.account) if row else None
        with self.session() as s:
            row = s.get(BankAccountRow, user_id)
            return dict(row.account) if row else None

    def set_bank_account(self, user_id: int, account: dict) -> None:
        with self.transaction() as session:
            row = session.get(BankAccountRow, user_id)
            if row is None:
                session.add(BankAccountRow(user_id=user_id, account=account))
            else:
                row.account = account
                row.updated_at = utcnow()

    def get_list_owner(self, list_id: int) -> Optional[int]:
        with self.session() as session:
            row = session.get(ListOwnerRow, list_id)
            return row.user_id if row else None

    def set_list_owner(self, list_id: int, user_id: int) -> None:
        with self.transaction() as session:
            row = session.get(ListOwnerRow, list_id)
            if row is None:
                session.add(ListOwnerRow(list_id=list_id, user_id=user_id))
            else:
                row.user_id = user_id

