import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import CurrencyCode, DebtKind, SelectionKind, TransactionType


class TransactionIn(BaseModel):
    kind: TransactionType
    amount: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    currency: Optional[CurrencyCode] = None
    description: str = Field(default="", max_length=500)
    category_id: Optional[int] = None
    project_id: Optional[int] = None
    balance_id: Optional[int] = None
    created_at: Optional[datetime] = None


class CandidateIn(BaseModel):
    """One transaction proposed by the extraction service, not yet confirmed."""

    model_config = ConfigDict(extra="ignore")

    kind: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    description: str = Field(default="", max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)
    currency: Optional[CurrencyCode] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_type_alias(cls, data):
        # The extraction prompt answers with "type"; the ledger calls it "kind".
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = dict(data)
            data["kind"] = data.pop("type")
        return data


class ExtractionIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)


class SelectionIn(BaseModel):
    kind: SelectionKind
    ref: Optional[int] = None

    @model_validator(mode="after")
    def _ref_matches_kind(self) -> "SelectionIn":
        needs_ref = self.kind in (SelectionKind.project, SelectionKind.balance)
        if needs_ref and self.ref is None:
            raise ValueError(f"Selection '{self.kind.value}' requires a ref")
        if not needs_ref and self.ref is not None:
            raise ValueError(f"Selection '{self.kind.value}' takes no ref")
        return self


class ProjectIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class BalanceIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    currency: CurrencyCode = CurrencyCode.uzs
    opening_amount: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=2)
    emoji: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: TransactionType
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)


class TransferIn(BaseModel):
    from_balance_id: int
    to_balance_id: int
    amount: Decimal = Field(..., max_digits=18, decimal_places=2)
    fee: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=2)
    date: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=200)


class DebtEntryIn(BaseModel):
    contact_id: Optional[int] = None
    contact_name: Optional[str] = Field(default=None, max_length=100)
    kind: DebtKind
    amount: Decimal = Field(..., ge=0, max_digits=18, decimal_places=2)
    currency: CurrencyCode = CurrencyCode.uzs
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _names_a_contact(self) -> "DebtEntryIn":
        if self.contact_id is None and not (self.contact_name or "").strip():
            raise ValueError("Debt entry needs contact_id or contact_name")
        return self
