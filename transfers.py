"""Moving money between two personal balances as one all-or-nothing unit."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from errors import AtomicityFailure, NotFound, TransferInvariantViolation
from models import PersonalBalance, Transaction, Transfer, TransactionType
from periods import ledger_now
from schemas import TransferIn
from scopes import Scope
from services import ZERO, BalanceService, TransactionService, adjust_balance

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    initiated = "initiated"
    legs_written = "legs_written"
    balances_updated = "balances_updated"
    committed = "committed"
    rolled_back = "rolled_back"


@dataclass
class TransferResult:
    state: TransferState
    transfer: Optional[Transfer] = None
    legs: list[Transaction] = field(default_factory=list)


class TransferService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _validate(self, data: TransferIn) -> tuple[PersonalBalance, PersonalBalance]:
        if data.from_balance_id == data.to_balance_id:
            raise TransferInvariantViolation("Cannot transfer to the same balance")
        if data.amount <= ZERO:
            raise TransferInvariantViolation("Transfer amount must be positive")
        if data.fee < ZERO:
            raise TransferInvariantViolation("Transfer fee cannot be negative")
        balances = BalanceService(self.session, self.user_id)
        source = balances.get(data.from_balance_id)
        target = balances.get(data.to_balance_id)
        if source.currency != target.currency:
            raise TransferInvariantViolation(
                "Both balances must hold the same currency"
            )
        return source, target

    def _write_legs(
        self, transfer: Transfer, source: PersonalBalance, target: PersonalBalance
    ) -> list[Transaction]:
        txns = TransactionService(self.session, self.user_id)
        planned = [
            (
                TransactionType.expense,
                transfer.amount,
                source,
                f"Transfer to {target.title}",
            )
        ]
        if transfer.fee > ZERO:
            planned.append(
                (TransactionType.expense, transfer.fee, source, "Transfer fee")
            )
        planned.append(
            (
                TransactionType.income,
                transfer.amount,
                target,
                f"Transfer from {source.title}",
            )
        )
        # Balances move together in _update_balances once every leg is in place.
        return [
            txns.insert(
                kind=kind,
                amount=amount,
                scope=Scope(balance_id=balance.id),
                currency=balance.currency,
                description=description,
                created_at=transfer.date,
                transfer_id=transfer.id,
                adjust=False,
            )
            for kind, amount, balance, description in planned
        ]

    def _update_balances(self, transfer: Transfer) -> None:
        adjust_balance(
            self.session, transfer.from_balance_id, -(transfer.amount + transfer.fee)
        )
        adjust_balance(self.session, transfer.to_balance_id, transfer.amount)

    def transfer(self, data: TransferIn) -> TransferResult:
        """Run initiated → legs_written → balances_updated → committed.

        Validation errors are raised before anything is written. Any failure
        after that rolls the whole unit back and raises ``AtomicityFailure``.
        """
        source, target = self._validate(data)
        result = TransferResult(state=TransferState.initiated)
        try:
            transfer = Transfer(
                user_id=self.user_id,
                from_balance_id=source.id,
                to_balance_id=target.id,
                amount=data.amount,
                fee=data.fee,
                date=ledger_now(data.date),
                note=data.note,
            )
            self.session.add(transfer)
            self.session.flush()
            result.transfer = transfer

            result.legs = self._write_legs(transfer, source, target)
            self.session.flush()
            result.state = TransferState.legs_written

            self._update_balances(transfer)
            result.state = TransferState.balances_updated

            self.session.commit()
            result.state = TransferState.committed
        except Exception as exc:
            self.session.rollback()
            failed_at = result.state.value
            result.state = TransferState.rolled_back
            logger.exception(
                f"transfer_rolled_back: user={self.user_id} "
                f"from={data.from_balance_id} to={data.to_balance_id} "
                f"failed_after={failed_at}"
            )
            raise AtomicityFailure("Transfer failed; nothing was changed") from exc

        logger.info(
            f"transfer_committed: user={self.user_id} id={result.transfer.id} "
            f"from={source.id} to={target.id} amount={data.amount} fee={data.fee} "
            f"legs={len(result.legs)}"
        )
        return result

    def get(self, transfer_id: int) -> Transfer:
        transfer = self.session.get(Transfer, transfer_id)
        if not transfer or transfer.user_id != self.user_id:
            raise NotFound("Transfer not found")
        return transfer
