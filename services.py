from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import NotFound
from models import (
    Category,
    CurrencyCode,
    PersonalBalance,
    Project,
    SelectionKind,
    Transaction,
    TransactionType,
    User,
)
from periods import Window, ledger_now
from schemas import BalanceIn, CandidateIn, CategoryIn, ProjectIn, TransactionIn
from scopes import (
    ReadFilter,
    Scope,
    Selection,
    resolve_write_scope,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def default_currency() -> CurrencyCode:
    return CurrencyCode(get_settings().default_currency)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def signed_amount(kind: TransactionType, amount: Decimal) -> Decimal:
    return amount if kind == TransactionType.income else -amount


def adjust_balance(session: Session, balance_id: int, delta: Decimal) -> None:
    """Atomic ``amount = amount + delta`` issued by the store."""
    session.execute(
        update(PersonalBalance)
        .where(PersonalBalance.id == balance_id)
        .values(amount=PersonalBalance.amount + delta)
        .execution_options(synchronize_session="fetch")
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def get_or_create(self, telegram_id: int, username: Optional[str] = None) -> User:
        user = self.session.scalar(select(User).where(User.telegram_id == telegram_id))
        if user:
            if username and user.username != username:
                user.username = username
                self.session.commit()
            return user
        user = User(
            telegram_id=telegram_id,
            username=username,
            selection_kind=SelectionKind.unscoped,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id} telegram_id={telegram_id}")
        return user

    def normalize_selection(self, user_id: int, selection: Selection) -> Selection:
        """Stale project/balance references fall back to the unscoped view."""
        if selection.is_project:
            project = self.session.get(Project, selection.ref)
            if not project or project.user_id != user_id:
                return Selection.unscoped()
        if selection.is_balance:
            balance = self.session.get(PersonalBalance, selection.ref)
            if not balance or balance.user_id != user_id:
                return Selection.unscoped()
        return selection

    def current_selection(self, user_id: int) -> Selection:
        user = self.get(user_id)
        stored = Selection.from_user(user)
        selection = self.normalize_selection(user_id, stored)
        if selection != stored:
            logger.info(
                f"selection_reset: user={user_id} stale={stored.kind.value}:{stored.ref}"
            )
            selection.apply_to(user)
            self.session.commit()
        return selection

    def set_selection(self, user_id: int, selection: Selection) -> Selection:
        user = self.get(user_id)
        if self.normalize_selection(user_id, selection) != selection:
            raise NotFound(f"{selection.kind.value.capitalize()} not found")
        selection.apply_to(user)
        self.session.commit()
        return selection


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, kind: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(or_(Category.user_id == self.user_id, Category.user_id.is_(None)))
            .order_by(Category.is_default.desc(), Category.name)
        )
        if kind is not None:
            stmt = stmt.where(Category.kind == kind)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id not in (None, self.user_id):
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn, *, commit: bool = True) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.kind == data.kind,
                func.lower(Category.name) == clean_name.lower(),
            )
        )
        if existing:
            raise ValueError("Category already exists")
        category = Category(
            user_id=self.user_id,
            name=clean_name,
            kind=data.kind,
            icon=data.icon,
            color=data.color,
        )
        self.session.add(category)
        self.session.flush()
        if commit:
            self.session.commit()
        return category

    def labor_category(self) -> Category:
        """The user's labor/salary expense category, created on first use."""
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.is_labor.is_(True),
            )
        )
        if category:
            return category
        name = get_settings().labor_category
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.kind == TransactionType.expense,
                func.lower(Category.name) == name.lower(),
            )
        )
        if category is None:
            category = Category(
                user_id=self.user_id,
                name=name,
                kind=TransactionType.expense,
                icon="👷",
            )
            self.session.add(category)
        category.is_labor = True
        self.session.flush()
        return category

    def match(self, name: str, kind: TransactionType) -> Category:
        """Resolve a free-text category name, creating it when nothing is close."""
        clean_name = name.strip()
        input_lower = clean_name.lower()
        if kind == TransactionType.expense and (
            input_lower == get_settings().labor_category.lower()
        ):
            return self.labor_category()

        categories = self.list_all(kind)
        for category in categories:
            if category.name.lower() == input_lower:
                return category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = int(Levenshtein.distance(input_lower, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1 and len(best) == 1:
            return best[0]

        return self.create(CategoryIn(name=clean_name, kind=kind), commit=False)


class ProjectService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Project]:
        stmt = (
            select(Project)
            .where(Project.user_id == self.user_id)
            .order_by(Project.created_at.desc(), Project.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, project_id: int) -> Project:
        project = self.session.get(Project, project_id)
        if not project or project.user_id != self.user_id:
            raise NotFound("Project not found")
        return project

    def create(self, data: ProjectIn) -> Project:
        project = Project(user_id=self.user_id, name=data.name.strip())
        self.session.add(project)
        self.session.commit()
        self.session.refresh(project)
        return project

    def rename(self, project_id: int, data: ProjectIn) -> Project:
        project = self.get(project_id)
        project.name = data.name.strip()
        self.session.commit()
        return project

    def delete(self, project_id: int) -> int:
        """Delete a project with every row scoped to it.

        Users looking at the project fall back to the unscoped view.
        """
        project = self.get(project_id)
        removed = self.session.execute(
            delete(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.project_id == project.id,
            )
        ).rowcount
        self.session.execute(
            update(User)
            .where(
                User.selection_kind == SelectionKind.project,
                User.selection_ref == project.id,
            )
            .values(selection_kind=SelectionKind.unscoped, selection_ref=None)
        )
        self.session.delete(project)
        self.session.commit()
        logger.info(
            f"project_deleted: user={self.user_id} project={project_id} rows={removed}"
        )
        return removed or 0


class BalanceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[PersonalBalance]:
        stmt = (
            select(PersonalBalance)
            .where(PersonalBalance.user_id == self.user_id)
            .order_by(PersonalBalance.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, balance_id: int) -> PersonalBalance:
        balance = self.session.get(PersonalBalance, balance_id)
        if not balance or balance.user_id != self.user_id:
            raise NotFound("Balance not found")
        return balance

    def create(self, data: BalanceIn) -> PersonalBalance:
        balance = PersonalBalance(
            user_id=self.user_id,
            title=data.title.strip(),
            currency=data.currency,
            amount=data.opening_amount,
            opening_amount=data.opening_amount,
            emoji=data.emoji,
            color=data.color,
        )
        self.session.add(balance)
        self.session.commit()
        self.session.refresh(balance)
        return balance

    def opening_total(self, selection: Selection, currency: CurrencyCode) -> Decimal:
        """Opening amounts the selection's running balance starts from."""
        if selection.is_balance:
            balance = self.get(selection.ref)
            if balance.currency != currency:
                return ZERO
            return to_decimal(balance.opening_amount)
        if not selection.is_all:
            return ZERO
        stmt = select(func.coalesce(func.sum(PersonalBalance.opening_amount), 0)).where(
            PersonalBalance.user_id == self.user_id,
            PersonalBalance.currency == currency,
        )
        return to_decimal(self.session.execute(stmt).scalar_one())


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_scope(
        self, scope: Scope, currency: Optional[CurrencyCode]
    ) -> CurrencyCode:
        if scope.project_id is not None:
            ProjectService(self.session, self.user_id).get(scope.project_id)
        if scope.balance_id is not None:
            balance = BalanceService(self.session, self.user_id).get(scope.balance_id)
            if currency is not None and currency != balance.currency:
                raise ValueError(
                    f"Balance '{balance.title}' holds {balance.currency.value}, "
                    f"not {currency.value}"
                )
            return balance.currency
        return currency or default_currency()

    def insert(
        self,
        *,
        kind: TransactionType,
        amount: Decimal,
        scope: Scope,
        currency: Optional[CurrencyCode] = None,
        description: str = "",
        category_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
        transfer_id: Optional[int] = None,
        adjust: bool = True,
    ) -> Transaction:
        """Add one row and its balance mutation to the open unit; no commit."""
        if amount < ZERO:
            raise ValueError("Amount must not be negative")
        resolved_currency = self._check_scope(scope, currency)
        if category_id is not None:
            category = CategoryService(self.session, self.user_id).get(category_id)
            if category.kind != kind:
                raise ValueError("Category type mismatch")

        txn = Transaction(
            user_id=self.user_id,
            kind=kind,
            amount=amount,
            currency=resolved_currency,
            description=description.strip(),
            category_id=category_id,
            project_id=scope.project_id,
            balance_id=scope.balance_id,
            transfer_id=transfer_id,
            created_at=ledger_now(created_at),
        )
        self.session.add(txn)
        self.session.flush()
        if adjust and scope.balance_id is not None:
            adjust_balance(self.session, scope.balance_id, signed_amount(kind, amount))
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        scope = Scope(project_id=data.project_id, balance_id=data.balance_id)
        try:
            txn = self.insert(
                kind=data.kind,
                amount=data.amount,
                scope=scope,
                currency=data.currency,
                description=data.description,
                category_id=data.category_id,
                created_at=data.created_at,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"transaction_created: user={self.user_id} id={txn.id} "
            f"kind={txn.kind.value} amount={txn.amount} "
            f"project={txn.project_id} balance={txn.balance_id}"
        )
        return txn

    def create_in_selection(
        self, data: TransactionIn, selection: Selection
    ) -> Transaction:
        """Write where the user is currently looking (see ``resolve_write_scope``)."""
        scope = resolve_write_scope(data.kind, selection)
        return self.create(
            data.model_copy(
                update={"project_id": scope.project_id, "balance_id": scope.balance_id}
            )
        )

    def get(self, kind: TransactionType, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
                Transaction.kind == kind,
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound(f"{kind.value.capitalize()} not found")
        return txn

    def delete(self, kind: TransactionType, transaction_id: int) -> None:
        txn = self.get(kind, transaction_id)
        if txn.transfer_id is not None:
            raise ValueError("Transfer legs cannot be deleted on their own")
        try:
            if txn.balance_id is not None:
                adjust_balance(
                    self.session, txn.balance_id, -signed_amount(txn.kind, txn.amount)
                )
            self.session.delete(txn)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"transaction_deleted: user={self.user_id} id={transaction_id} "
            f"kind={kind.value}"
        )

    def recent(
        self,
        limit: int = 10,
        *,
        kind: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        """Newest rows first; ``start``/``end`` are inclusive ledger-local days."""
        if start is not None and end is not None and start > end:
            raise ValueError("Start date must be on or before end date")
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if kind is not None:
            stmt = stmt.where(Transaction.kind == kind)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= datetime.combine(start, time.min))
        if end is not None:
            stmt = stmt.where(
                Transaction.created_at
                < datetime.combine(end + timedelta(days=1), time.min)
            )
        return self.session.scalars(stmt).all()

    def list_for_window(
        self,
        read_filter: ReadFilter,
        window: Window,
        currency: Optional[CurrencyCode] = None,
        kind: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.project),
                joinedload(Transaction.balance),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.created_at >= window.start_at,
                Transaction.created_at < window.end_before,
                *read_filter.clauses(),
            )
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        if currency is not None:
            stmt = stmt.where(Transaction.currency == currency)
        if kind is not None:
            stmt = stmt.where(Transaction.kind == kind)
        return self.session.scalars(stmt).all()

    def net_before(
        self,
        read_filter: ReadFilter,
        before: datetime,
        currency: Optional[CurrencyCode] = None,
    ) -> Decimal:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.kind == TransactionType.income,
                            Transaction.amount,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.kind == TransactionType.expense,
                            Transaction.amount,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(
            Transaction.user_id == self.user_id,
            Transaction.created_at < before,
            *read_filter.clauses(),
        )
        if currency is not None:
            stmt = stmt.where(Transaction.currency == currency)
        row = self.session.execute(stmt).one()
        return to_decimal(row.income) - to_decimal(row.expenses)


class IngestService:
    """Persists candidates the user confirmed after voice/text extraction."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def confirm(
        self, candidates: list[CandidateIn], selection: Optional[Selection] = None
    ) -> list[Transaction]:
        if not candidates:
            raise ValueError("Nothing to confirm")
        users = UserService(self.session)
        if selection is None:
            selection = users.current_selection(self.user_id)
        else:
            selection = users.normalize_selection(self.user_id, selection)

        txn_service = TransactionService(self.session, self.user_id)
        categories = CategoryService(self.session, self.user_id)
        created: list[Transaction] = []
        try:
            for candidate in candidates:
                category_id = None
                if candidate.category and candidate.category.strip():
                    category_id = categories.match(candidate.category, candidate.kind).id
                created.append(
                    txn_service.insert(
                        kind=candidate.kind,
                        amount=candidate.amount,
                        scope=resolve_write_scope(candidate.kind, selection),
                        currency=candidate.currency,
                        description=candidate.description,
                        category_id=category_id,
                    )
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"candidates_confirmed: user={self.user_id} count={len(created)} "
            f"selection={selection.kind.value}:{selection.ref}"
        )
        return created

