"""
Builders and a stub oracle shared by the test modules.
"""
from models.schemas import LineItem, TaxRate, TaxSummary, OracleResult
from services.money import Money
from services.tax_oracle import TaxOracle


def item(item_id, price, name=None, category_id=None, category_name=None, taxes=()):
    """LineItem with a dollar-string (or None) price."""
    return LineItem(
        id=item_id,
        name=name or item_id.upper(),
        price=Money.from_decimal_string(price) if price is not None else None,
        applied_tax_ids=set(taxes),
        category_id=category_id,
        category_name=category_name,
    )


def summary(total_tax=None, rates=()):
    """TaxSummary from a dollar-string total and (id, rate) pairs."""
    return TaxSummary(
        total_tax_amount=Money.from_decimal_string(total_tax) if total_tax is not None else None,
        rates=[TaxRate(id=rid, name=rid.upper(), rate=rate) for rid, rate in rates],
    )


class StubOracle(TaxOracle):
    """Deterministic oracle: returns a canned answer and records every call."""

    def __init__(self, result=None, error=None):
        self.result = result if result is not None else OracleResult()
        self.error = error
        self.calls = []

    async def classify(self, items, rates, context=None):
        self.calls.append({"items": list(items), "rates": list(rates), "context": context})
        if self.error is not None:
            raise self.error
        return self.result
