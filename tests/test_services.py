from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidScope, NotFound
from models import CurrencyCode, SelectionKind, Transaction, TransactionType
from periods import ledger_now
from schemas import BalanceIn, CategoryIn, ProjectIn, TransactionIn
from scopes import Selection
from services import (
    BalanceService,
    CategoryService,
    ProjectService,
    TransactionService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_get_or_create_user_is_idempotent() -> None:
    session = make_session()
    users = UserService(session)
    first = users.get_or_create(1001, "owner")
    again = users.get_or_create(1001, "renamed")
    assert first.id == again.id
    assert again.username == "renamed"
    assert users.current_selection(first.id) == Selection.unscoped()


def test_delete_requires_the_matching_kind() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    txns = TransactionService(session, user.id)
    income = txns.create(
        TransactionIn(kind=TransactionType.income, amount=Decimal("1000"))
    )

    with pytest.raises(NotFound):
        txns.delete(TransactionType.expense, income.id)
    txns.delete(TransactionType.income, income.id)
    assert session.scalars(select(Transaction)).all() == []


def test_delete_reverses_the_balance_effect() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))
    txns = TransactionService(session, user.id)
    expense = txns.create(
        TransactionIn(
            kind=TransactionType.expense, amount=Decimal("40000"), balance_id=cash.id
        )
    )
    session.refresh(cash)
    assert cash.amount == Decimal("-40000")

    txns.delete(TransactionType.expense, expense.id)
    session.refresh(cash)
    assert cash.amount == Decimal("0")


def test_write_with_both_scopes_is_rejected_before_any_write() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    project = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))

    with pytest.raises(InvalidScope):
        TransactionService(session, user.id).create(
            TransactionIn(
                kind=TransactionType.expense,
                amount=Decimal("10"),
                project_id=project.id,
                balance_id=cash.id,
            )
        )
    assert session.scalars(select(Transaction)).all() == []
    session.refresh(cash)
    assert cash.amount == Decimal("0")


def test_currency_must_match_the_balance() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))
    with pytest.raises(ValueError):
        TransactionService(session, user.id).create(
            TransactionIn(
                kind=TransactionType.income,
                amount=Decimal("10"),
                currency=CurrencyCode.usd,
                balance_id=cash.id,
            )
        )


def test_category_kind_must_match() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    salary = CategoryService(session, user.id).create(
        CategoryIn(name="Salary", kind=TransactionType.income)
    )
    with pytest.raises(ValueError):
        TransactionService(session, user.id).create(
            TransactionIn(
                kind=TransactionType.expense,
                amount=Decimal("10"),
                category_id=salary.id,
            )
        )


def test_project_delete_cascades_and_resets_selection() -> None:
    session = make_session()
    users = UserService(session)
    user = users.get_or_create(1001, "owner")
    projects = ProjectService(session, user.id)
    villa = projects.create(ProjectIn(name="Villa-1"))
    keep = projects.create(ProjectIn(name="Garage"))
    users.set_selection(user.id, Selection.project(villa.id))

    txns = TransactionService(session, user.id)
    for amount in ("100", "200"):
        txns.create(
            TransactionIn(
                kind=TransactionType.expense,
                amount=Decimal(amount),
                project_id=villa.id,
            )
        )
    txns.create(
        TransactionIn(
            kind=TransactionType.expense, amount=Decimal("300"), project_id=keep.id
        )
    )

    assert projects.delete(villa.id) == 2
    remaining = session.scalars(select(Transaction)).all()
    assert [txn.project_id for txn in remaining] == [keep.id]

    session.refresh(user)
    assert user.selection_kind == SelectionKind.unscoped
    assert users.current_selection(user.id) == Selection.unscoped()
    with pytest.raises(NotFound):
        projects.get(villa.id)


def test_set_selection_rejects_foreign_targets() -> None:
    session = make_session()
    users = UserService(session)
    owner = users.get_or_create(1001, "owner")
    other = users.get_or_create(2002, "other")
    theirs = ProjectService(session, other.id).create(ProjectIn(name="Theirs"))

    with pytest.raises(NotFound):
        users.set_selection(owner.id, Selection.project(theirs.id))
    assert users.set_selection(owner.id, Selection.all()) == Selection.all()


def test_write_in_selection_lands_in_the_resolved_scope() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    villa = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))
    txns = TransactionService(session, user.id)
    when = datetime(2025, 3, 12, 9, 0)

    cases = [
        (TransactionType.expense, Selection.project(villa.id), (villa.id, None)),
        (TransactionType.income, Selection.project(villa.id), (None, None)),
        (TransactionType.income, Selection.balance(cash.id), (None, cash.id)),
        (TransactionType.expense, Selection.all(), (None, None)),
    ]
    for kind, selection, expected in cases:
        txn = txns.create_in_selection(
            TransactionIn(kind=kind, amount=Decimal("5"), created_at=when), selection
        )
        assert (txn.project_id, txn.balance_id) == expected

    for txn in session.scalars(select(Transaction)):
        assert txn.project_id is None or txn.balance_id is None


def test_labor_category_is_created_once() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    categories = CategoryService(session, user.id)
    first = categories.labor_category()
    session.commit()
    assert first.is_labor
    assert first.kind == TransactionType.expense
    assert categories.labor_category().id == first.id
    assert categories.match("ish haqi", TransactionType.expense).id == first.id


def test_records_are_stamped_in_ledger_time() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    project = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))
    txn = TransactionService(session, user.id).create(
        TransactionIn(kind=TransactionType.expense, amount=Decimal("10"))
    )

    now = ledger_now()
    for stamp in (user.created_at, project.created_at, cash.created_at):
        assert abs(stamp - now) < timedelta(minutes=1)
    assert abs(project.created_at - txn.created_at) < timedelta(minutes=1)


def test_recent_filters_by_kind_category_and_days() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    materials = CategoryService(session, user.id).create(
        CategoryIn(name="Materials", kind=TransactionType.expense)
    )
    txns = TransactionService(session, user.id)
    rows = [
        (TransactionType.income, None, datetime(2025, 3, 10, 9, 0)),
        (TransactionType.expense, materials.id, datetime(2025, 3, 11, 23, 30)),
        (TransactionType.expense, None, datetime(2025, 3, 12, 8, 0)),
        (TransactionType.expense, materials.id, datetime(2025, 3, 13, 0, 0)),
    ]
    for kind, category_id, created_at in rows:
        txns.create(
            TransactionIn(
                kind=kind,
                amount=Decimal("1000"),
                category_id=category_id,
                created_at=created_at,
            )
        )

    expenses = txns.recent(10, kind=TransactionType.expense)
    assert [t.created_at.day for t in expenses] == [13, 12, 11]

    in_materials = txns.recent(10, category_id=materials.id)
    assert [t.created_at.day for t in in_materials] == [13, 11]

    window = txns.recent(10, start=date(2025, 3, 11), end=date(2025, 3, 12))
    assert [t.created_at.day for t in window] == [12, 11]

    assert txns.recent(1, kind=TransactionType.expense)[0].created_at.day == 13
    with pytest.raises(ValueError):
        txns.recent(10, start=date(2025, 3, 12), end=date(2025, 3, 11))
