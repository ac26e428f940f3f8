from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import ledger_now

AMOUNT = Numeric(18, 2)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class CurrencyCode(str, Enum):
    uzs = "UZS"
    usd = "USD"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class SelectionKind(str, Enum):
    all = "all"
    project = "project"
    balance = "balance"
    unscoped = "unscoped"


class DebtKind(str, Enum):
    borrow = "borrow"
    lend = "lend"
    repay = "repay"
    receive = "receive"


def _ledger_stamp() -> datetime:
    return ledger_now()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_ledger_stamp, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_ledger_stamp, onupdate=_ledger_stamp, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(64))
    selection_kind: Mapped[SelectionKind] = mapped_column(
        SAEnum(SelectionKind), default=SelectionKind.unscoped, nullable=False
    )
    selection_ref: Mapped[Optional[int]] = mapped_column(Integer)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL owner marks a global default shared by every user.
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_labor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "name", name="uq_category_user_kind_name"),
    )


class Project(Base, TimestampMixin):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    __table_args__ = (Index("ix_projects_user", "user_id"),)


class PersonalBalance(Base, TimestampMixin):
    __tablename__ = "personal_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.uzs
    )
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=0)
    opening_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=0)
    emoji: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(9))

    __table_args__ = (Index("ix_personal_balances_user", "user_id"),)


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    from_balance_id: Mapped[int] = mapped_column(
        ForeignKey("personal_balances.id"), nullable=False
    )
    to_balance_id: Mapped[int] = mapped_column(
        ForeignKey("personal_balances.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    fee: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=0)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    legs: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="transfer"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfers_amount_positive"),
        CheckConstraint("fee >= 0", name="ck_transfers_fee_non_negative"),
        CheckConstraint(
            "from_balance_id <> to_balance_id", name="ck_transfers_distinct_balances"
        ),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.uzs
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    project_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE")
    )
    balance_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("personal_balances.id")
    )
    transfer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transfers.id"))
    # Wall-clock time in the ledger timezone (UTC+5).
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    project: Mapped[Optional["Project"]] = relationship("Project")
    balance: Mapped[Optional["PersonalBalance"]] = relationship("PersonalBalance")
    transfer: Mapped[Optional["Transfer"]] = relationship(
        "Transfer", back_populates="legs"
    )

    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_user_project", "user_id", "project_id"),
        Index("ix_transactions_user_balance", "user_id", "balance_id"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "project_id IS NULL OR balance_id IS NULL",
            name="ck_transactions_single_scope",
        ),
    )


class DebtContact(Base, TimestampMixin):
    __tablename__ = "debt_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    entries: Mapped[list["DebtEntry"]] = relationship(
        "DebtEntry", back_populates="contact", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_debt_contact_user_name"),
    )


class DebtEntry(Base, TimestampMixin):
    __tablename__ = "debt_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("debt_contacts.id"), nullable=False
    )
    kind: Mapped[DebtKind] = mapped_column(SAEnum(DebtKind), nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.uzs
    )
    occurred_on: Mapped[date] = mapped_column("date", Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    contact: Mapped["DebtContact"] = relationship(
        "DebtContact", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_debt_entries_user_contact", "user_id", "contact_id", "currency"),
        CheckConstraint("amount >= 0", name="ck_debt_entries_amount_positive"),
    )
