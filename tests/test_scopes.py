from types import SimpleNamespace

import pytest

from errors import InvalidScope
from models import SelectionKind, TransactionType
from scopes import (
    UNSCOPED,
    Scope,
    Selection,
    resolve_read_filter,
    resolve_write_scope,
)


def txn(kind, project_id=None, balance_id=None):
    return SimpleNamespace(kind=kind, project_id=project_id, balance_id=balance_id)


def test_income_never_lands_on_a_project() -> None:
    assert (
        resolve_write_scope(TransactionType.income, Selection.project(3)) == UNSCOPED
    )
    assert resolve_write_scope(TransactionType.income, Selection.all()) == UNSCOPED
    assert resolve_write_scope(
        TransactionType.income, Selection.balance(7)
    ) == Scope(balance_id=7)


def test_expense_follows_the_selection() -> None:
    expense = TransactionType.expense
    assert resolve_write_scope(expense, Selection.project(3)) == Scope(project_id=3)
    assert resolve_write_scope(expense, Selection.balance(7)) == Scope(balance_id=7)
    assert resolve_write_scope(expense, Selection.all()) == UNSCOPED
    assert resolve_write_scope(expense, Selection.unscoped()) == UNSCOPED


def test_scope_rejects_project_and_balance_together() -> None:
    with pytest.raises(InvalidScope):
        Scope(project_id=1, balance_id=2)


def test_project_view_hides_income_and_other_projects() -> None:
    read_filter = resolve_read_filter(Selection.project(3))
    assert read_filter.include_income is False
    assert read_filter.matches(txn(TransactionType.expense, project_id=3))
    assert not read_filter.matches(txn(TransactionType.income, project_id=3))
    assert not read_filter.matches(txn(TransactionType.expense, project_id=4))
    assert not read_filter.matches(txn(TransactionType.expense))


def test_unscoped_view_only_sees_unattributed_rows() -> None:
    read_filter = resolve_read_filter(Selection.unscoped())
    assert read_filter.matches(txn(TransactionType.income))
    assert read_filter.matches(txn(TransactionType.expense))
    assert not read_filter.matches(txn(TransactionType.expense, project_id=1))
    assert not read_filter.matches(txn(TransactionType.income, balance_id=1))


def test_all_view_sees_everything() -> None:
    read_filter = resolve_read_filter(Selection.all())
    assert read_filter.clauses() == []
    for row in (
        txn(TransactionType.income),
        txn(TransactionType.expense, project_id=1),
        txn(TransactionType.income, balance_id=2),
    ):
        assert read_filter.matches(row)


def test_selection_from_user_without_ref_falls_back_to_unscoped() -> None:
    user = SimpleNamespace(selection_kind=SelectionKind.project, selection_ref=None)
    assert Selection.from_user(user) == Selection.unscoped()

    user = SimpleNamespace(selection_kind=SelectionKind.balance, selection_ref=5)
    assert Selection.from_user(user) == Selection.balance(5)
