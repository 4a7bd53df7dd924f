from decimal import Decimal
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from services.money import Money, parse_rate


# ── Tax rates ──────────────────────────────────────────
class TaxRate(BaseModel):
    id: str
    name: str = ""
    rate: Optional[Decimal] = None     # fraction in [0, 1]; None = magnitude unknown
    enabled: bool = True
    estimated: bool = False            # introduced by the oracle, not printed on the receipt

    @field_validator("rate", mode="before")
    @classmethod
    def _normalize_rate(cls, v):
        return None if v is None else parse_rate(v)

    @property
    def is_known_positive(self) -> bool:
        return self.rate is not None and self.rate > 0


class TaxSummary(BaseModel):
    total_tax_amount: Optional[Money] = None
    rates: List[TaxRate] = []

    @field_validator("total_tax_amount")
    @classmethod
    def _non_negative(cls, v):
        if v is not None and v.cents < 0:
            raise ValueError("total_tax_amount cannot be negative")
        return v

    @model_validator(mode="after")
    def _unique_rate_ids(self):
        seen = set()
        for r in self.rates:
            if r.id in seen:
                raise ValueError(f"duplicate tax rate id: {r.id!r}")
            seen.add(r.id)
        return self


# ── Line Item ──────────────────────────────────────────
class LineItem(BaseModel):
    id: str
    name: str = ""
    price: Optional[Money] = None      # unknown until OCR or the user fills it in
    applied_tax_ids: set[str] = Field(default_factory=set)
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    manual: bool = False               # added by hand rather than extracted

    @field_serializer("applied_tax_ids", when_used="json")
    def _sorted_tax_ids(self, v: set[str]) -> list[str]:
        return sorted(v)


class ReceiptContext(BaseModel):
    """Merchant hints passed through to the oracle."""
    store_name: Optional[str] = None
    store_location: Optional[str] = None


# ── Attribution ────────────────────────────────────────
class ResolvedBy(str, Enum):
    NO_TAX = "no_tax"
    EXACT_SUBSET_SUM = "exact_subset_sum"
    TOLERATED_SUBSET_SUM = "tolerated_subset_sum"
    ORACLE = "oracle"
    UNRESOLVED = "unresolved"


class AttributionResult(BaseModel):
    items: List[LineItem]
    rates: List[TaxRate]
    resolved_by: ResolvedBy
    target_cents: Optional[int] = None             # taxable base the resolver searched for
    tolerance_offset_cents: Optional[int] = None   # δ that produced the match

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _tax_ids_exist(self):
        known = {r.id for r in self.rates}
        for item in self.items:
            missing = item.applied_tax_ids - known
            if missing:
                raise ValueError(
                    f"item {item.id!r} references unknown tax ids: {sorted(missing)}"
                )
        return self


# ── Oracle ─────────────────────────────────────────────
class OracleRate(BaseModel):
    id: str
    description: str = ""
    rate: Optional[Decimal] = None

    @field_validator("rate", mode="before")
    @classmethod
    def _normalize_rate(cls, v):
        return None if v is None else parse_rate(v)


class OracleResult(BaseModel):
    assignments: dict[str, List[str]] = Field(default_factory=dict)   # item id → tax ids
    new_rates: List[OracleRate] = []


# ── Reconciliation ─────────────────────────────────────
class ReportedTotals(BaseModel):
    """Figures printed on the receipt, each optional."""
    subtotal: Optional[Money] = None
    tax: Optional[Money] = None
    total: Optional[Money] = None


class MismatchKind(str, Enum):
    SUBTOTAL = "subtotal_mismatch"
    TAX = "tax_mismatch"
    TOTAL = "total_mismatch"


class Mismatch(BaseModel):
    kind: MismatchKind
    reported: Money
    computed: Money
    difference: Money      # reported − computed


class ReconciliationReport(BaseModel):
    computed_subtotal: Money
    computed_tax: Money
    computed_total: Money
    reported_subtotal: Optional[Money] = None
    reported_tax: Optional[Money] = None
    reported_total: Optional[Money] = None
    mismatches: List[Mismatch] = []
    estimated_tax_present: bool = False

    @property
    def kinds(self) -> list[MismatchKind]:
        return [m.kind for m in self.mismatches]


# ── Categories ─────────────────────────────────────────
class CategoryTotal(BaseModel):
    category_id: str
    category_name: str
    subtotal: Money
    tax: Money
    total: Money
    item_count: int
    estimated_tax: bool = False


class Split(BaseModel):
    category_id: str
    amount: Money


# ── API requests / responses ───────────────────────────
class AttributeRequest(BaseModel):
    items: List[LineItem]
    tax_summary: TaxSummary
    context: Optional[ReceiptContext] = None


class ReconcileRequest(BaseModel):
    attribution: AttributionResult
    reported: ReportedTotals = Field(default_factory=ReportedTotals)


class AnalyzeRequest(BaseModel):
    items: List[LineItem]
    tax_summary: TaxSummary
    context: Optional[ReceiptContext] = None
    reported: ReportedTotals = Field(default_factory=ReportedTotals)


class ReceiptTaxAnalysis(BaseModel):
    attribution: AttributionResult
    reconciliation: ReconciliationReport
    categories: List[CategoryTotal]
    status_message: str
    verification_message: str
