from datetime import datetime, timedelta
from decimal import Decimal
from io import BytesIO

from openpyxl import load_workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from aggregation import ReportService
from database import Base
from models import CurrencyCode, TransactionType
from periods import compute_window
from projections import (
    format_money,
    format_signed,
    render_chat_text,
    render_report_html,
    render_spreadsheet,
)
from schemas import ProjectIn, TransactionIn
from scopes import Selection
from services import CategoryService, ProjectService, TransactionService, UserService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


MONTH = compute_window("month", datetime(2025, 3, 28, 12, 0))


def seeded_report(session, selection=None):
    user = UserService(session).get_or_create(1001, "owner")
    villa = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    labor = CategoryService(session, user.id).labor_category()
    session.commit()
    txns = TransactionService(session, user.id)
    txns.create(
        TransactionIn(
            kind=TransactionType.income,
            amount=Decimal("1500000"),
            description="Advance",
            created_at=datetime(2025, 3, 1, 9, 0),
        )
    )
    txns.create(
        TransactionIn(
            kind=TransactionType.expense,
            amount=Decimal("200000"),
            description="Cement",
            project_id=villa.id,
            created_at=datetime(2025, 3, 2, 10, 0),
        )
    )
    txns.create(
        TransactionIn(
            kind=TransactionType.expense,
            amount=Decimal("300000"),
            description="Brigade",
            project_id=villa.id,
            category_id=labor.id,
            created_at=datetime(2025, 3, 3, 18, 0),
        )
    )
    if selection is None:
        selection = Selection.all()
    elif selection == "villa":
        selection = Selection.project(villa.id)
    return ReportService(session, user.id).aggregate(selection, MONTH)


def test_money_formatting_groups_thousands() -> None:
    assert format_money(Decimal("1500000"), CurrencyCode.uzs) == "1 500 000 so'm"
    assert format_money(Decimal("12.5"), CurrencyCode.usd) == "12.50 $"
    assert format_signed(Decimal("-380000"), CurrencyCode.uzs) == "-380 000 so'm"
    assert format_signed(Decimal("0"), CurrencyCode.uzs) == "0 so'm"


def test_chat_text_shows_totals_and_labor_line() -> None:
    report = seeded_report(make_session())
    text = render_chat_text(report)
    assert "🟢 Income: +1 500 000 so'm" in text
    assert "🔴 Expense: -500 000 so'm" in text
    assert "💵 Balance: +1 000 000 so'm" in text
    assert "🏗 Villa-1: -500 000 so'm" in text
    assert "👷 Labor: -300 000 so'm" in text
    assert "🧱 Materials & other: -200 000 so'm" in text
    assert "Brigade" in text


def test_chat_text_for_project_hides_income() -> None:
    report = seeded_report(make_session(), selection="villa")
    text = render_chat_text(report)
    assert "Income" not in text
    assert "Opening balance" not in text
    assert "💵 Balance: -500 000 so'm" in text


def test_chat_text_truncates_to_latest_rows() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    txns = TransactionService(session, user.id)
    start = datetime(2025, 3, 1, 8, 0)
    for index in range(25):
        txns.create(
            TransactionIn(
                kind=TransactionType.expense,
                amount=Decimal("1000"),
                description=f"Nails #{index}",
                created_at=start + timedelta(hours=index),
            )
        )
    report = ReportService(session, user.id).aggregate(Selection.unscoped(), MONTH)

    text = render_chat_text(report, limit=20)
    assert "… 5 earlier entries not shown" in text
    assert "Nails #24" in text
    assert "Nails #4:" not in text
    assert "Nails #5:" in text
    assert "🔴 Expense: -25 000 so'm" in text


def test_chat_text_for_empty_period() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    report = ReportService(session, user.id).aggregate(Selection.all(), MONTH)
    text = render_chat_text(report)
    assert "No entries in this period." in text
    assert "earlier entries" not in text


def test_html_report_carries_the_same_totals() -> None:
    report = seeded_report(make_session())
    html = render_report_html(
        report, owner_name="owner", generated_at=datetime(2025, 3, 28, 12, 0)
    )
    assert "Villa-1" in html
    assert "+1 500 000" in html
    assert "-500 000" in html
    assert "-300 000" in html
    assert "Brigade" in html
    assert "2025-03-28 12:00" in html


def test_spreadsheet_matches_report() -> None:
    report = seeded_report(make_session())
    wb = load_workbook(BytesIO(render_spreadsheet(report)))
    assert wb.sheetnames == ["Summary", "Transactions", "Expenses by scope"]

    summary = {row[0]: row[1] for row in wb["Summary"].iter_rows(values_only=True)}
    assert Decimal(str(summary["Total income"])) == report.total_income
    assert Decimal(str(summary["Total expense"])) == report.total_expense
    assert Decimal(str(summary["Closing balance"])) == report.closing_balance

    ledger = list(wb["Transactions"].iter_rows(values_only=True))
    assert ledger[0][0] == "Date"
    # Header, opening balance row, then one row per transaction.
    assert len(ledger) == 2 + len(report.rows)
    balances = [Decimal(str(row[6])) for row in ledger[2:]]
    assert balances == [row.balance for row in report.rows]

    buckets = list(wb["Expenses by scope"].iter_rows(values_only=True))
    assert ("Villa-1", "Labor") == buckets[2][:2]
    assert Decimal(str(buckets[2][2])) == Decimal("300000")


def test_chat_text_always_splits_labor_and_materials() -> None:
    session = make_session()
    user = UserService(session).get_or_create(1001, "owner")
    villa = ProjectService(session, user.id).create(ProjectIn(name="Villa-1"))
    TransactionService(session, user.id).create(
        TransactionIn(
            kind=TransactionType.expense,
            amount=Decimal("80000"),
            description="Sand",
            project_id=villa.id,
            created_at=datetime(2025, 3, 5, 10, 0),
        )
    )
    report = ReportService(session, user.id).aggregate(
        Selection.project(villa.id), MONTH
    )

    text = render_chat_text(report)
    assert "🏗 Villa-1: -80 000 so'm" in text
    assert "👷 Labor: 0 so'm" in text
    assert "🧱 Materials & other: -80 000 so'm" in text
