"""
Category totals for the review screen and the budget split payload.
"""
from typing import Sequence

from models.schemas import AttributionResult, CategoryTotal, Split
from services.money import Money
from services.reconciliation import RECONCILE_EPSILON_CENTS, has_estimated_tax, item_tax

UNCATEGORIZED_ID = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"


def aggregate_by_category(result: AttributionResult) -> list[CategoryTotal]:
    """Group items by budget category, in the order categories first appear."""
    rates_by_id = {r.id: r for r in result.rates}
    groups: dict[str, dict] = {}

    for item in result.items:
        cat_id = item.category_id or UNCATEGORIZED_ID
        group = groups.setdefault(cat_id, {
            "name": item.category_name or (UNCATEGORIZED_NAME if cat_id == UNCATEGORIZED_ID else cat_id),
            "subtotal": Money.zero(),
            "tax": Money.zero(),
            "count": 0,
            "estimated": False,
        })
        if item.price is not None:
            group["subtotal"] += item.price
        group["tax"] += item_tax(item, rates_by_id)
        group["count"] += 1
        group["estimated"] = group["estimated"] or has_estimated_tax(item, rates_by_id)

    return [
        CategoryTotal(
            category_id=cat_id,
            category_name=g["name"],
            subtotal=g["subtotal"],
            tax=g["tax"],
            total=g["subtotal"] + g["tax"],
            item_count=g["count"],
            estimated_tax=g["estimated"],
        )
        for cat_id, g in groups.items()
    ]


def build_splits(rows: Sequence[CategoryTotal], include_tax: bool = True) -> list[Split]:
    """One budget split per category row, tax folded in unless told otherwise."""
    return [
        Split(category_id=row.category_id, amount=row.total if include_tax else row.subtotal)
        for row in rows
    ]


def splits_balance(splits: Sequence[Split], expected: Money,
                   epsilon_cents: int = RECONCILE_EPSILON_CENTS) -> bool:
    """Do the splits add up to the amount being posted (within rounding)?"""
    return abs((Money.total(s.amount for s in splits) - expected).cents) <= epsilon_cents
