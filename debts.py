from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import NotFound
from models import CurrencyCode, DebtContact, DebtEntry, DebtKind
from periods import ledger_now
from schemas import DebtEntryIn
from services import ZERO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactBalance:
    contact_id: int
    name: str
    currency: CurrencyCode
    i_owe: Decimal
    owed_to_me: Decimal


def net_debt_entries(entries: Iterable) -> tuple[Decimal, Decimal]:
    """Return ``(i_owe, owed_to_me)`` for one contact in one currency.

    Both sides are clamped at zero: repaying more than was borrowed (or
    receiving more than was lent) leaves nothing owed, never a negative debt.
    """
    totals = {kind: ZERO for kind in DebtKind}
    for entry in entries:
        totals[entry.kind] += entry.amount
    i_owe = max(ZERO, totals[DebtKind.borrow] - totals[DebtKind.repay])
    owed_to_me = max(ZERO, totals[DebtKind.lend] - totals[DebtKind.receive])
    return i_owe, owed_to_me


class DebtService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_contacts(self) -> list[DebtContact]:
        stmt = (
            select(DebtContact)
            .where(DebtContact.user_id == self.user_id)
            .order_by(DebtContact.name)
        )
        return self.session.scalars(stmt).all()

    def get_contact(self, contact_id: int) -> DebtContact:
        contact = self.session.get(DebtContact, contact_id)
        if not contact or contact.user_id != self.user_id:
            raise NotFound("Contact not found")
        return contact

    def _contact_by_name(self, name: str) -> DebtContact:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Contact name cannot be empty")
        contact = self.session.scalar(
            select(DebtContact).where(
                DebtContact.user_id == self.user_id,
                func.lower(DebtContact.name) == clean_name.lower(),
            )
        )
        if contact:
            return contact
        contact = DebtContact(user_id=self.user_id, name=clean_name)
        self.session.add(contact)
        self.session.flush()
        logger.info(f"debt_contact_created: user={self.user_id} id={contact.id}")
        return contact

    def add_entry(self, data: DebtEntryIn) -> DebtEntry:
        try:
            if data.contact_id is not None:
                contact = self.get_contact(data.contact_id)
            else:
                contact = self._contact_by_name(data.contact_name or "")
            entry = DebtEntry(
                user_id=self.user_id,
                contact_id=contact.id,
                kind=data.kind,
                amount=data.amount,
                currency=data.currency,
                occurred_on=data.date or ledger_now().date(),
                note=data.note,
            )
            self.session.add(entry)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(entry)
        logger.info(
            f"debt_entry_created: user={self.user_id} contact={contact.id} "
            f"kind={entry.kind.value} amount={entry.amount} currency={entry.currency.value}"
        )
        return entry

    def delete_entry(self, entry_id: int) -> None:
        entry = self.session.get(DebtEntry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise NotFound("Debt entry not found")
        self.session.delete(entry)
        self.session.commit()

    def list_entries(
        self,
        contact_id: Optional[int] = None,
        currency: Optional[CurrencyCode] = None,
    ) -> list[DebtEntry]:
        stmt = (
            select(DebtEntry)
            .where(DebtEntry.user_id == self.user_id)
            .order_by(DebtEntry.occurred_on.asc(), DebtEntry.id.asc())
        )
        if contact_id is not None:
            stmt = stmt.where(DebtEntry.contact_id == contact_id)
        if currency is not None:
            stmt = stmt.where(DebtEntry.currency == currency)
        return self.session.scalars(stmt).all()

    def aggregate(self, currency: CurrencyCode) -> list[ContactBalance]:
        entries_by_contact: dict[int, list[DebtEntry]] = {}
        for entry in self.list_entries(currency=currency):
            entries_by_contact.setdefault(entry.contact_id, []).append(entry)

        balances: list[ContactBalance] = []
        for contact in self.list_contacts():
            i_owe, owed_to_me = net_debt_entries(entries_by_contact.get(contact.id, []))
            balances.append(
                ContactBalance(
                    contact_id=contact.id,
                    name=contact.name,
                    currency=currency,
                    i_owe=i_owe,
                    owed_to_me=owed_to_me,
                )
            )
        return balances

    def totals(self, currency: CurrencyCode) -> dict[str, Decimal]:
        balances = self.aggregate(currency)
        return {
            "i_owe": sum((b.i_owe for b in balances), ZERO),
            "owed_to_me": sum((b.owed_to_me for b in balances), ZERO),
        }
