"""Render a ``ReportData`` as chat text, a PDF document or a spreadsheet.

The renderers only format what the aggregation produced; totals, buckets and
running balances are read from the report as-is.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from io import BytesIO
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

from aggregation import ReportData, ReportRow
from models import CurrencyCode

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
CURRENCY_SUFFIX = {CurrencyCode.uzs: "so'm", CurrencyCode.usd: "$"}
CHAT_RULE = "────────────────"
AMOUNT_FORMAT = "#,##0.00"


def _group(value: Decimal) -> str:
    value = abs(value).quantize(Decimal("0.01"))
    if value == value.to_integral_value():
        text = f"{int(value):,}"
    else:
        text = f"{value:,.2f}"
    return text.replace(",", " ")


def format_money(amount: Decimal, currency: CurrencyCode) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}{_group(amount)} {CURRENCY_SUFFIX[currency]}"


def format_signed(amount: Decimal, currency: CurrencyCode) -> str:
    if amount > 0:
        sign = "+"
    elif amount < 0:
        sign = "-"
    else:
        sign = ""
    return f"{sign}{_group(amount)} {CURRENCY_SUFFIX[currency]}"


def format_income(amount: Decimal, currency: CurrencyCode) -> str:
    return f"+{_group(amount)} {CURRENCY_SUFFIX[currency]}"


def format_expense(amount: Decimal, currency: CurrencyCode) -> str:
    sign = "-" if amount else ""
    return f"{sign}{_group(amount)} {CURRENCY_SUFFIX[currency]}"


def format_row(row: ReportRow) -> str:
    if row.is_income:
        return format_income(row.amount, row.currency)
    return format_expense(row.amount, row.currency)


def render_chat_text(report: ReportData, limit: int = 20) -> str:
    cur = report.currency
    lines = [f"📊 {report.period_label}", f"📁 {report.scope_label}", ""]
    if report.show_opening_balance:
        lines.append(f"💼 Opening balance: {format_signed(report.opening_balance, cur)}")
    if report.show_income:
        lines.append(f"🟢 Income: {format_income(report.total_income, cur)}")
    lines.append(f"🔴 Expense: {format_expense(report.total_expense, cur)}")
    lines.append(CHAT_RULE)
    lines.append(f"💵 Balance: {format_signed(report.closing_balance, cur)}")

    if report.is_empty:
        lines.append("")
        lines.append("No entries in this period.")
        return "\n".join(lines)

    if report.expense_buckets:
        lines.append("")
    for bucket in report.expense_buckets:
        lines.append(f"🏗 {bucket.label}: {format_expense(bucket.bucket_total, cur)}")
        lines.append(f"   👷 Labor: {format_expense(bucket.labor_total, cur)}")
        lines.append(
            f"   🧱 Materials & other: {format_expense(bucket.regular_total, cur)}"
        )

    shown = report.rows[-limit:] if limit > 0 else []
    omitted = len(report.rows) - len(shown)
    lines.append("")
    if omitted:
        lines.append(f"… {omitted} earlier entries not shown")
    for row in shown:
        icon = "🟢" if row.is_income else ("👷" if row.is_labor else "🔴")
        label = row.description or row.category or row.scope_label
        stamp = row.created_at.strftime("%d.%m %H:%M")
        lines.append(f"{icon} {stamp} {label}: {format_row(row)}")
    return "\n".join(lines)


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["money"] = format_money
_env.filters["signed"] = format_signed
_env.filters["income"] = format_income
_env.filters["expense"] = format_expense
_env.globals["format_row"] = format_row


def render_report_html(
    report: ReportData,
    *,
    owner_name: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    template = _env.get_template("report.html")
    return template.render(
        report=report,
        owner_name=owner_name,
        generated_at=generated_at or datetime.now(),
    )


def render_pdf(report: ReportData, *, owner_name: Optional[str] = None) -> bytes:
    try:
        from weasyprint import CSS, HTML
        from weasyprint.text.fonts import FontConfiguration
    except Exception as exc:
        raise RuntimeError(
            "PDF export requires WeasyPrint system dependencies; "
            "install them for your OS and retry."
        ) from exc

    start_time = datetime.now()
    html = render_report_html(report, owner_name=owner_name)
    font_config = FontConfiguration()
    css = CSS(
        string="""
            @page {
                size: A4;
                margin: 16mm 14mm 18mm 14mm;
                @bottom-center {
                    content: "Page " counter(page) " of " counter(pages);
                    color: #64748b;
                    font-size: 9pt;
                }
            }
        """,
        font_config=font_config,
    )
    pdf_bytes = HTML(string=html).write_pdf(stylesheets=[css], font_config=font_config)
    duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"report_pdf: period={report.window.slug} rows={len(report.rows)} "
        f"pdf_size_bytes={len(pdf_bytes)} pdf_duration={duration:.2f}s"
    )
    return pdf_bytes


def render_spreadsheet(report: ReportData) -> bytes:
    bold = Font(bold=True)
    labor_font = Font(italic=True, color="9A3412")
    labor_fill = PatternFill("solid", fgColor="FFEDD5")

    wb = Workbook()
    summary = wb.active
    summary.title = "Summary"
    summary.append(["Period", report.period_label])
    summary.append(["Scope", report.scope_label])
    summary.append(["Currency", report.currency.value])
    if report.show_opening_balance:
        summary.append(["Opening balance", report.opening_balance])
    if report.show_income:
        summary.append(["Total income", report.total_income])
    summary.append(["Total expense", report.total_expense])
    summary.append(["Net for period", report.period_net])
    summary.append(["Closing balance", report.closing_balance])
    for row in summary.iter_rows(min_row=1, max_col=1):
        row[0].font = bold
    for (cell,) in summary.iter_rows(min_row=4, min_col=2, max_col=2):
        cell.number_format = AMOUNT_FORMAT
    summary.column_dimensions["A"].width = 20
    summary.column_dimensions["B"].width = 32

    ledger = wb.create_sheet("Transactions")
    ledger.append(
        ["Date", "Type", "Description", "Category", "Scope", "Amount", "Balance"]
    )
    for cell in ledger[1]:
        cell.font = bold
    if report.show_opening_balance:
        ledger.append(
            [
                report.window.start_at,
                "opening",
                "Opening balance",
                None,
                None,
                None,
                report.opening_balance,
            ]
        )
    for row in report.rows:
        ledger.append(
            [
                row.created_at,
                row.kind.value,
                row.description,
                row.category,
                row.scope_label,
                row.signed_amount,
                row.balance,
            ]
        )
        if row.is_labor:
            for cell in ledger[ledger.max_row]:
                cell.fill = labor_fill
    for cells in ledger.iter_rows(min_row=2):
        cells[0].number_format = "yyyy-mm-dd hh:mm"
        cells[5].number_format = AMOUNT_FORMAT
        cells[6].number_format = AMOUNT_FORMAT
    for column, width in zip("ABCDEFG", (17, 9, 36, 18, 18, 16, 16)):
        ledger.column_dimensions[column].width = width

    buckets = wb.create_sheet("Expenses by scope")
    buckets.append(["Scope", "Line", "Amount"])
    for cell in buckets[1]:
        cell.font = bold
    for bucket in report.expense_buckets:
        buckets.append([bucket.label, "Total", bucket.bucket_total])
        for cell in buckets[buckets.max_row]:
            cell.font = bold
        buckets.append([bucket.label, "Labor", bucket.labor_total])
        for cell in buckets[buckets.max_row]:
            cell.font = labor_font
            cell.fill = labor_fill
        buckets.append([bucket.label, "Regular", bucket.regular_total])
    for cells in buckets.iter_rows(min_row=2):
        cells[2].number_format = AMOUNT_FORMAT
    buckets.column_dimensions["A"].width = 24
    buckets.column_dimensions["C"].width = 16

    output = BytesIO()
    wb.save(output)
    return output.getvalue()
