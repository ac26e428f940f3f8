"""Period report aggregation.

Every report projection (chat text, PDF, spreadsheet, JSON) renders the
``ReportData`` built here and never recomputes totals or balances itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from models import CurrencyCode, TransactionType
from periods import Window
from scopes import Selection, resolve_read_filter
from services import (
    ZERO,
    BalanceService,
    ProjectService,
    TransactionService,
    UserService,
    default_currency,
    signed_amount,
)

logger = logging.getLogger(__name__)

ALL_LABEL = "All projects"
OTHER_LABEL = "Other"
UNCATEGORIZED_LABEL = "Uncategorized"


@dataclass(frozen=True)
class ReportRow:
    id: int
    kind: TransactionType
    amount: Decimal
    currency: CurrencyCode
    description: str
    category: Optional[str]
    is_labor: bool
    scope_key: str
    scope_label: str
    created_at: datetime
    balance: Decimal

    @property
    def is_income(self) -> bool:
        return self.kind == TransactionType.income

    @property
    def signed_amount(self) -> Decimal:
        return signed_amount(self.kind, self.amount)


@dataclass
class ExpenseBucket:
    key: str
    label: str
    regular: list[ReportRow] = field(default_factory=list)
    labor: list[ReportRow] = field(default_factory=list)

    @property
    def regular_total(self) -> Decimal:
        return sum((row.amount for row in self.regular), ZERO)

    @property
    def labor_total(self) -> Decimal:
        return sum((row.amount for row in self.labor), ZERO)

    @property
    def bucket_total(self) -> Decimal:
        return self.regular_total + self.labor_total

    @property
    def count(self) -> int:
        return len(self.regular) + len(self.labor)


@dataclass
class CategoryTotal:
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    income: Decimal = ZERO
    expense: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.income + self.expense

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "icon": self.icon,
            "color": self.color,
            "income": self.income,
            "expense": self.expense,
        }


@dataclass
class ReportData:
    selection: Selection
    window: Window
    scope_label: str
    currency: CurrencyCode
    opening_balance: Decimal
    incomes: list[ReportRow]
    expense_buckets: list[ExpenseBucket]
    rows: list[ReportRow]
    total_income: Decimal
    total_expense: Decimal
    categories: list[CategoryTotal] = field(default_factory=list)

    @property
    def period_net(self) -> Decimal:
        return self.total_income - self.total_expense

    @property
    def closing_balance(self) -> Decimal:
        if self.rows:
            return self.rows[-1].balance
        return self.opening_balance

    @property
    def period_label(self) -> str:
        return self.window.describe()

    @property
    def show_income(self) -> bool:
        # Project views are expense-only.
        return not self.selection.is_project

    @property
    def show_opening_balance(self) -> bool:
        return not self.selection.is_project

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def as_dict(self) -> dict[str, object]:
        def row_dict(row: ReportRow) -> dict[str, object]:
            return {
                "id": row.id,
                "kind": row.kind.value,
                "amount": row.amount,
                "currency": row.currency.value,
                "description": row.description,
                "category": row.category,
                "is_labor": row.is_labor,
                "scope": row.scope_label,
                "created_at": row.created_at.isoformat(),
                "balance": row.balance,
            }

        return {
            "period": {
                "slug": self.window.slug,
                "label": self.period_label,
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "scope": {
                "kind": self.selection.kind.value,
                "ref": self.selection.ref,
                "label": self.scope_label,
            },
            "currency": self.currency.value,
            "total_income": self.total_income,
            "total_expense": self.total_expense,
            "period_net": self.period_net,
            "opening_balance": (
                self.opening_balance if self.show_opening_balance else None
            ),
            "closing_balance": self.closing_balance,
            "incomes": [row_dict(row) for row in self.incomes],
            "expense_buckets": [
                {
                    "key": bucket.key,
                    "label": bucket.label,
                    "regular_total": bucket.regular_total,
                    "labor_total": bucket.labor_total,
                    "bucket_total": bucket.bucket_total,
                    "regular": [row_dict(row) for row in bucket.regular],
                    "labor": [row_dict(row) for row in bucket.labor],
                }
                for bucket in self.expense_buckets
            ],
            "categories": [totals.as_dict() for totals in self.categories],
            "rows": [row_dict(row) for row in self.rows],
        }


def _scope_of(txn) -> tuple[str, str]:
    if txn.project_id is not None:
        project = getattr(txn, "project", None)
        label = project.name if project is not None else f"Project #{txn.project_id}"
        return f"project:{txn.project_id}", label
    if txn.balance_id is not None:
        balance = getattr(txn, "balance", None)
        label = balance.title if balance is not None else f"Balance #{txn.balance_id}"
        return f"balance:{txn.balance_id}", label
    return "other", OTHER_LABEL


def _bucket_order(bucket: ExpenseBucket) -> tuple[int, str]:
    rank = {"project": 0, "balance": 1}.get(bucket.key.split(":")[0], 2)
    return rank, bucket.label.lower()


def _selection_key(selection: Selection) -> str:
    if selection.is_project:
        return f"project:{selection.ref}"
    if selection.is_balance:
        return f"balance:{selection.ref}"
    return "other"


def build_report(
    transactions: Iterable,
    *,
    selection: Selection,
    window: Window,
    opening_balance: Decimal,
    currency: CurrencyCode,
    scope_label: str,
) -> ReportData:
    """Pure reduction of already-fetched rows into a ``ReportData``."""
    read_filter = resolve_read_filter(selection)
    included = sorted(
        (txn for txn in transactions if read_filter.matches(txn)),
        key=lambda txn: (txn.created_at, txn.id),
    )
    if selection.is_project:
        opening_balance = ZERO

    running = opening_balance
    rows: list[ReportRow] = []
    categories: dict[str, CategoryTotal] = {}
    for txn in included:
        running += signed_amount(txn.kind, txn.amount)
        key, label = _scope_of(txn)
        category = getattr(txn, "category", None)
        name = category.name if category is not None else UNCATEGORIZED_LABEL
        totals = categories.get(name)
        if totals is None:
            totals = categories[name] = CategoryTotal(
                name=name,
                icon=category.icon if category is not None else None,
                color=category.color if category is not None else None,
            )
        if txn.kind == TransactionType.income:
            totals.income += txn.amount
        else:
            totals.expense += txn.amount
        rows.append(
            ReportRow(
                id=txn.id,
                kind=txn.kind,
                amount=txn.amount,
                currency=txn.currency,
                description=txn.description or "",
                category=category.name if category is not None else None,
                is_labor=bool(category is not None and category.is_labor),
                scope_key=key,
                scope_label=label,
                created_at=txn.created_at,
                balance=running,
            )
        )

    incomes = [row for row in rows if row.is_income]
    expenses = [row for row in rows if not row.is_income]

    buckets: dict[str, ExpenseBucket] = {}
    if not selection.is_all:
        key = _selection_key(selection)
        buckets[key] = ExpenseBucket(key=key, label=scope_label)
    for row in expenses:
        key = row.scope_key if selection.is_all else _selection_key(selection)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = ExpenseBucket(key=key, label=row.scope_label)
        (bucket.labor if row.is_labor else bucket.regular).append(row)

    return ReportData(
        selection=selection,
        window=window,
        scope_label=scope_label,
        currency=currency,
        opening_balance=opening_balance,
        incomes=incomes,
        expense_buckets=sorted(buckets.values(), key=_bucket_order),
        rows=rows,
        total_income=sum((row.amount for row in incomes), ZERO),
        total_expense=sum((row.amount for row in expenses), ZERO),
        categories=sorted(
            categories.values(), key=lambda totals: (-totals.total, totals.name.lower())
        ),
    )


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.txn_service = TransactionService(session, user_id)

    def scope_label(self, selection: Selection) -> str:
        if selection.is_all:
            return ALL_LABEL
        if selection.is_project:
            return ProjectService(self.session, self.user_id).get(selection.ref).name
        if selection.is_balance:
            balance = BalanceService(self.session, self.user_id).get(selection.ref)
            return f"{balance.emoji} {balance.title}" if balance.emoji else balance.title
        return OTHER_LABEL

    def aggregate(
        self,
        selection: Selection,
        window: Window,
        currency: Optional[CurrencyCode] = None,
    ) -> ReportData:
        selection = UserService(self.session).normalize_selection(
            self.user_id, selection
        )
        if currency is None:
            if selection.is_balance:
                currency = (
                    BalanceService(self.session, self.user_id)
                    .get(selection.ref)
                    .currency
                )
            else:
                currency = default_currency()

        read_filter = resolve_read_filter(selection)
        transactions = self.txn_service.list_for_window(read_filter, window, currency)
        if selection.is_project:
            opening_balance = ZERO
        else:
            opening_balance = self.txn_service.net_before(
                read_filter, window.prior_end_at, currency
            ) + BalanceService(self.session, self.user_id).opening_total(
                selection, currency
            )

        report = build_report(
            transactions,
            selection=selection,
            window=window,
            opening_balance=opening_balance,
            currency=currency,
            scope_label=self.scope_label(selection),
        )
        logger.info(
            f"report_aggregated: user={self.user_id} "
            f"scope={selection.kind.value}:{selection.ref} period={window.slug} "
            f"rows={len(report.rows)} income={report.total_income} "
            f"expense={report.total_expense}"
        )
        return report
