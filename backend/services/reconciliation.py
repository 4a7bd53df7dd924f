"""
Reconciliation — recompute subtotal / tax / total from attributed items and
compare them with what the receipt printed.

Differences are reported as Mismatch data, never raised: the attribution
stays usable and the reviewer decides what to do about a banner.
"""
import logging
import os
from typing import Mapping, Optional

from models.schemas import (
    AttributionResult,
    LineItem,
    Mismatch,
    MismatchKind,
    ReconciliationReport,
    ReportedTotals,
    TaxRate,
)
from services.money import Money

logger = logging.getLogger("apportion.reconcile")

# Differences up to and including this many cents are rounding, not mismatches.
RECONCILE_EPSILON_CENTS = int(os.environ.get("RECONCILE_EPSILON_CENTS", "1"))


def item_tax(item: LineItem, rates_by_id: Mapping[str, TaxRate]) -> Money:
    """Tax on one item: each applied rate of known magnitude, rounded separately."""
    if item.price is None:
        return Money.zero()
    tax = Money.zero()
    for tax_id in sorted(item.applied_tax_ids):
        rate = rates_by_id.get(tax_id)
        if rate is None or rate.rate is None or not rate.enabled:
            continue
        tax += Money.from_fraction(item.price, rate.rate)
    return tax


def has_estimated_tax(item: LineItem, rates_by_id: Mapping[str, TaxRate]) -> bool:
    """True when the item carries a rate whose magnitude is unknown."""
    return any(
        tax_id in rates_by_id and rates_by_id[tax_id].rate is None
        and rates_by_id[tax_id].enabled
        for tax_id in item.applied_tax_ids
    )


def _compare(kind: MismatchKind, reported: Optional[Money], computed: Money,
             epsilon_cents: int) -> Optional[Mismatch]:
    if reported is None:
        return None
    difference = reported - computed
    if abs(difference.cents) <= epsilon_cents:
        return None
    return Mismatch(kind=kind, reported=reported, computed=computed, difference=difference)


def reconcile(
    result: AttributionResult,
    reported: Optional[ReportedTotals] = None,
    epsilon_cents: int = RECONCILE_EPSILON_CENTS,
) -> ReconciliationReport:
    reported = reported or ReportedTotals()
    rates_by_id = {r.id: r for r in result.rates}

    subtotal = Money.total(i.price for i in result.items if i.price is not None)
    tax = Money.total(item_tax(i, rates_by_id) for i in result.items)
    total = subtotal + tax

    mismatches = [
        m for m in (
            _compare(MismatchKind.SUBTOTAL, reported.subtotal, subtotal, epsilon_cents),
            _compare(MismatchKind.TAX, reported.tax, tax, epsilon_cents),
            _compare(MismatchKind.TOTAL, reported.total, total, epsilon_cents),
        )
        if m is not None
    ]
    for m in mismatches:
        logger.debug("%s: reported %s, computed %s", m.kind.value,
                     m.reported.format(), m.computed.format())

    return ReconciliationReport(
        computed_subtotal=subtotal,
        computed_tax=tax,
        computed_total=total,
        reported_subtotal=reported.subtotal,
        reported_tax=reported.tax,
        reported_total=reported.total,
        mismatches=mismatches,
        estimated_tax_present=any(has_estimated_tax(i, rates_by_id) for i in result.items),
    )


def verification_message(report: ReconciliationReport) -> str:
    """One-line summary for the review screen."""
    computed = (
        f"Items {report.computed_subtotal.format()} + Tax {report.computed_tax.format()}"
        f" = {report.computed_total.format()}"
    )
    if report.estimated_tax_present:
        computed += " (plus estimated tax)"
    if not report.mismatches:
        return computed + " ✓"

    labels = {
        MismatchKind.SUBTOTAL: "subtotal",
        MismatchKind.TAX: "tax",
        MismatchKind.TOTAL: "total",
    }
    details = ", ".join(
        f"receipt {labels[m.kind]} {m.reported.format()} (diff {abs(m.difference).format()})"
        for m in report.mismatches
    )
    return f"Mismatch: {computed} ≠ {details}. Check for missing items or tax assignments."
