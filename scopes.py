"""Where a transaction is written, and which rows a report reads.

A *selection* is what the user currently looks at (one project, one personal
balance, everything, or the unscoped "other" bucket). A *scope* is what a
single transaction is tagged with; it is never "all".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from errors import InvalidScope
from models import SelectionKind, Transaction, TransactionType


@dataclass(frozen=True)
class Selection:
    kind: SelectionKind
    ref: Optional[int] = None

    @classmethod
    def all(cls) -> Selection:
        return cls(SelectionKind.all)

    @classmethod
    def unscoped(cls) -> Selection:
        return cls(SelectionKind.unscoped)

    @classmethod
    def project(cls, project_id: int) -> Selection:
        return cls(SelectionKind.project, project_id)

    @classmethod
    def balance(cls, balance_id: int) -> Selection:
        return cls(SelectionKind.balance, balance_id)

    @classmethod
    def from_user(cls, user) -> Selection:
        kind = user.selection_kind or SelectionKind.unscoped
        if kind in (SelectionKind.project, SelectionKind.balance):
            if user.selection_ref is None:
                return cls.unscoped()
            return cls(kind, user.selection_ref)
        return cls(kind)

    def apply_to(self, user) -> None:
        user.selection_kind = self.kind
        user.selection_ref = self.ref

    @property
    def is_all(self) -> bool:
        return self.kind == SelectionKind.all

    @property
    def is_project(self) -> bool:
        return self.kind == SelectionKind.project

    @property
    def is_balance(self) -> bool:
        return self.kind == SelectionKind.balance


@dataclass(frozen=True)
class Scope:
    project_id: Optional[int] = None
    balance_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.project_id is not None and self.balance_id is not None:
            raise InvalidScope(
                "A transaction belongs to a project or a personal balance, not both"
            )


UNSCOPED = Scope()


def resolve_write_scope(kind: TransactionType, selection: Selection) -> Scope:
    if kind == TransactionType.income:
        # Projects are cost centers; only a personal balance can receive income.
        if selection.is_balance:
            return Scope(balance_id=selection.ref)
        return UNSCOPED

    if selection.is_project:
        return Scope(project_id=selection.ref)
    if selection.is_balance:
        return Scope(balance_id=selection.ref)
    # "All" is a read-only aggregate view.
    return UNSCOPED


@dataclass(frozen=True)
class ReadFilter:
    selection: Selection
    include_income: bool

    def clauses(self) -> list:
        sel = self.selection
        if sel.is_all:
            return []
        if sel.is_project:
            return [
                Transaction.project_id == sel.ref,
                Transaction.kind == TransactionType.expense,
            ]
        if sel.is_balance:
            return [Transaction.balance_id == sel.ref]
        return [Transaction.project_id.is_(None), Transaction.balance_id.is_(None)]

    def matches(self, txn) -> bool:
        if not self.include_income and txn.kind == TransactionType.income:
            return False
        sel = self.selection
        if sel.is_all:
            return True
        if sel.is_project:
            return txn.project_id == sel.ref
        if sel.is_balance:
            return txn.balance_id == sel.ref
        return txn.project_id is None and txn.balance_id is None


def resolve_read_filter(selection: Selection) -> ReadFilter:
    return ReadFilter(selection=selection, include_income=not selection.is_project)
