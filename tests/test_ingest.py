from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Category, Transaction, TransactionType
from schemas import BalanceIn, CandidateIn, CategoryIn, ProjectIn
from scopes import Selection
from services import (
    BalanceService,
    CategoryService,
    IngestService,
    ProjectService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def candidate(kind: str, amount: str, description: str = "", category=None):
    return CandidateIn.model_validate(
        {"type": kind, "amount": amount, "description": description, "category": category}
    )


def test_confirm_writes_through_the_current_selection() -> None:
    session = make_session()
    users = UserService(session)
    user = users.get_or_create(1001, "owner")
    villa = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    users.set_selection(user.id, Selection.project(villa.id))

    created = IngestService(session, user.id).confirm(
        [candidate("expense", "20000", "Taksi"), candidate("income", "50000", "Oylik")]
    )
    assert [(t.kind, t.project_id) for t in created] == [
        (TransactionType.expense, villa.id),
        (TransactionType.income, None),
    ]


def test_confirm_into_balance_moves_the_balance() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))

    IngestService(session, user.id).confirm(
        [candidate("income", "500000"), candidate("expense", "120000")],
        Selection.balance(cash.id),
    )
    session.refresh(cash)
    assert cash.amount == Decimal("380000")


def test_confirm_matches_existing_category_case_insensitive() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    food = CategoryService(session, user.id).create(
        CategoryIn(name="Food", kind=TransactionType.expense)
    )
    [txn] = IngestService(session, user.id).confirm(
        [candidate("expense", "500", "Lunch", category="food")]
    )
    assert txn.category_id == food.id


def test_confirm_fuzzy_matches_within_one_edit() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    materials = CategoryService(session, user.id).create(
        CategoryIn(name="Materials", kind=TransactionType.expense)
    )
    [txn] = IngestService(session, user.id).confirm(
        [candidate("expense", "1299", "Sement", category="Materals")]
    )
    assert txn.category_id == materials.id


def test_confirm_creates_category_when_not_found() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    [txn] = IngestService(session, user.id).confirm(
        [candidate("expense", "700", "Bus", category="Transport")]
    )
    assert txn.category.name == "Transport"
    names = session.scalars(select(Category.name)).all()
    assert names == ["Transport"]


def test_confirm_labor_name_uses_labor_category() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    [txn] = IngestService(session, user.id).confirm(
        [candidate("expense", "300000", "Brigade", category="Ish haqi")]
    )
    assert txn.category.is_labor


def test_failed_batch_writes_nothing() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    cash = BalanceService(session, user.id).create(BalanceIn(title="Cash"))
    batch = [
        candidate("income", "1000"),
        CandidateIn(kind=TransactionType.expense, amount=Decimal("5"), currency="USD"),
    ]
    with pytest.raises(ValueError):
        IngestService(session, user.id).confirm(batch, Selection.balance(cash.id))
    assert session.scalars(select(Transaction)).all() == []
    session.refresh(cash)
    assert cash.amount == Decimal("0")
