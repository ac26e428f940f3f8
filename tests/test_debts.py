from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from debts import DebtService, net_debt_entries
from errors import NotFound
from models import CurrencyCode, DebtKind
from schemas import DebtEntryIn
from services import UserService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def entry(kind: DebtKind, amount: str):
    return SimpleNamespace(kind=kind, amount=Decimal(amount))


def test_over_repayment_clamps_to_zero() -> None:
    i_owe, owed_to_me = net_debt_entries(
        [
            entry(DebtKind.borrow, "100000"),
            entry(DebtKind.repay, "60000"),
            entry(DebtKind.repay, "70000"),
        ]
    )
    assert i_owe == Decimal("0")
    assert owed_to_me == Decimal("0")


def test_lend_and_receive_net_independently() -> None:
    i_owe, owed_to_me = net_debt_entries(
        [
            entry(DebtKind.lend, "50000"),
            entry(DebtKind.receive, "20000"),
            entry(DebtKind.borrow, "10000"),
        ]
    )
    assert i_owe == Decimal("10000")
    assert owed_to_me == Decimal("30000")


def test_contact_is_created_on_first_entry_and_reused() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    debts = DebtService(session, user.id)

    first = debts.add_entry(
        DebtEntryIn(
            contact_name="Akmal",
            kind=DebtKind.borrow,
            amount=Decimal("300000"),
            date=date(2025, 3, 1),
        )
    )
    second = debts.add_entry(
        DebtEntryIn(contact_name=" akmal ", kind=DebtKind.repay, amount=Decimal("100000"))
    )
    assert first.contact_id == second.contact_id
    assert [c.name for c in debts.list_contacts()] == ["Akmal"]
    assert first.occurred_on == date(2025, 3, 1)

    [balance] = debts.aggregate(CurrencyCode.uzs)
    assert balance.name == "Akmal"
    assert balance.i_owe == Decimal("200000")
    assert balance.owed_to_me == Decimal("0")


def test_currencies_are_aggregated_separately() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    debts = DebtService(session, user.id)
    debts.add_entry(
        DebtEntryIn(
            contact_name="Bobur",
            kind=DebtKind.lend,
            amount=Decimal("100"),
            currency=CurrencyCode.usd,
        )
    )
    debts.add_entry(
        DebtEntryIn(contact_name="Bobur", kind=DebtKind.lend, amount=Decimal("900000"))
    )
    debts.add_entry(
        DebtEntryIn(contact_name="Dilshod", kind=DebtKind.borrow, amount=Decimal("50000"))
    )

    assert debts.totals(CurrencyCode.usd) == {
        "i_owe": Decimal("0"),
        "owed_to_me": Decimal("100"),
    }
    assert debts.totals(CurrencyCode.uzs) == {
        "i_owe": Decimal("50000"),
        "owed_to_me": Decimal("900000"),
    }


def test_delete_entry_changes_the_aggregate() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    debts = DebtService(session, user.id)
    lent = debts.add_entry(
        DebtEntryIn(contact_name="Akmal", kind=DebtKind.lend, amount=Decimal("5000"))
    )
    debts.delete_entry(lent.id)
    assert debts.totals(CurrencyCode.uzs)["owed_to_me"] == Decimal("0")
    with pytest.raises(NotFound):
        debts.delete_entry(lent.id)


def test_entry_needs_a_contact() -> None:
    with pytest.raises(ValidationError):
        DebtEntryIn(kind=DebtKind.borrow, amount=Decimal("1"))

    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    with pytest.raises(NotFound):
        DebtService(session, user.id).add_entry(
            DebtEntryIn(contact_id=77, kind=DebtKind.borrow, amount=Decimal("1"))
        )
