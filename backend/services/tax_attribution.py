"""
Tax Attribution Engine

Works out which line items on a receipt were taxed.  Tiers, first success
wins:

  1. No tax at all             — nothing to attribute
  2. Exact subset-sum          — one known rate: find the items whose prices
                                 add up to total_tax / rate
  3. Tolerance sweep           — same search at target ±1¢ … ±N¢, because
                                 printed tax is rounded per line
  4. Oracle                    — ask the TaxOracle (Claude) when the
                                 combinatorial tiers cannot apply or fail

If the oracle fails, times out or says nothing useful the receipt comes
back UNRESOLVED with no taxes applied — the user assigns them by hand.
Tiers 1–3 are pure; the oracle call is the only await.
"""
import asyncio
import logging
import os
from typing import Iterable, Mapping, Optional, Sequence

from models.schemas import (
    AttributionResult,
    LineItem,
    OracleResult,
    ReceiptContext,
    ResolvedBy,
    TaxRate,
    TaxSummary,
)
from services.subset_sum import find_subset
from services.tax_oracle import OracleError, TaxOracle

logger = logging.getLogger("apportion.attribution")

TAX_TOLERANCE_CENTS = int(os.environ.get("TAX_TOLERANCE_CENTS", "5"))
ORACLE_TIMEOUT_SECONDS = float(os.environ.get("ORACLE_TIMEOUT_SECONDS", "20"))

ESTIMATED_RATE_ID = "estimated"
ESTIMATED_RATE_NAME = "Estimated tax"

RESOLUTION_MESSAGES = {
    ResolvedBy.NO_TAX: "No tax on this receipt.",
    ResolvedBy.EXACT_SUBSET_SUM: "Taxed items matched the receipt's tax exactly.",
    ResolvedBy.TOLERATED_SUBSET_SUM: "Taxed items matched the receipt's tax within rounding.",
    ResolvedBy.ORACLE: "Tax attribution estimated by heuristic — please check.",
    ResolvedBy.UNRESOLVED: "Tax attribution unavailable — please assign taxes manually.",
}


class AttributionInputError(ValueError):
    """Raised when the items handed to the engine are inconsistent."""
    pass


def describe_resolution(resolved_by: ResolvedBy) -> str:
    return RESOLUTION_MESSAGES[resolved_by]


def sweep_offsets(tolerance_cents: int) -> Iterable[int]:
    """0, +1, -1, +2, -2, … +N, -N — closest to exact first."""
    yield 0
    for delta in range(1, tolerance_cents + 1):
        yield delta
        yield -delta


def _build_result(
    items: Sequence[LineItem],
    rates: Sequence[TaxRate],
    resolved_by: ResolvedBy,
    applied: Mapping[str, Iterable[str]],
    target_cents: Optional[int] = None,
    offset: Optional[int] = None,
) -> AttributionResult:
    # Copies only; the caller's items are left untouched.
    return AttributionResult(
        items=[
            item.model_copy(update={"applied_tax_ids": set(applied.get(item.id, ()))})
            for item in items
        ],
        rates=list(rates),
        resolved_by=resolved_by,
        target_cents=target_cents,
        tolerance_offset_cents=offset,
    )


def _check_unique_ids(items: Sequence[LineItem]):
    seen = set()
    for item in items:
        if item.id in seen:
            raise AttributionInputError(f"duplicate line item id: {item.id!r}")
        seen.add(item.id)


def resolve_without_oracle(
    items: Sequence[LineItem],
    tax_summary: TaxSummary,
    tolerance_cents: int = TAX_TOLERANCE_CENTS,
) -> Optional[AttributionResult]:
    """
    Tiers 1–3.  Returns None when the receipt needs the oracle: no usable
    single rate, no known tax total, or no subset inside the sweep window.
    """
    total_tax = tax_summary.total_tax_amount
    known = [r for r in tax_summary.rates if r.enabled and r.is_known_positive]

    # Tier 1
    if (total_tax is None or total_tax.cents == 0) and not known:
        logger.debug("No tax on receipt — %d items left untaxed", len(items))
        return _build_result(items, tax_summary.rates, ResolvedBy.NO_TAX, {})

    if len(known) != 1 or total_tax is None or total_tax.cents <= 0:
        logger.info("Subset-sum not applicable (%d known rates, tax=%s)",
                    len(known), total_tax.format() if total_tax is not None else "n/a")
        return None

    # Tiers 2 + 3
    rate = known[0]
    target = total_tax.divide_by_rate(rate.rate).cents
    candidates = [(item.id, item.price.cents) for item in items if item.price is not None]

    for offset in sweep_offsets(tolerance_cents):
        swept = target + offset
        if swept <= 0:
            continue
        chosen = find_subset(swept, candidates)
        if chosen is None:
            continue
        resolved_by = (ResolvedBy.EXACT_SUBSET_SUM if offset == 0
                       else ResolvedBy.TOLERATED_SUBSET_SUM)
        logger.info("Matched %d of %d items to %s at %d¢ (offset %+d¢)",
                    len(chosen), len(items), rate.id, swept, offset)
        return _build_result(
            items, tax_summary.rates, resolved_by,
            {item_id: {rate.id} for item_id in chosen},
            target_cents=target, offset=offset,
        )

    logger.info("No subset of %d items sums to %d¢ ±%d¢ for rate %s",
                len(candidates), target, tolerance_cents, rate.id)
    return None


def merge_oracle_result(
    items: Sequence[LineItem],
    rates: Sequence[TaxRate],
    answer: OracleResult,
) -> Optional[AttributionResult]:
    """
    Fold an oracle answer into the receipt's own rate list.

    Unknown item ids and tax ids the oracle never declared are dropped.
    Every rate the oracle invented collapses into one synthetic
    ESTIMATED_RATE_ID rate of unknown magnitude, added only if the receipt
    does not carry one already.  If the receipt carries it disabled, estimated
    assignments are dropped.  Returns None if nothing usable is left.
    """
    enabled_ids = {r.id for r in rates if r.enabled}
    declared = {r.id: r for r in answer.new_rates if r.id not in enabled_ids}
    item_ids = {item.id for item in items}
    # a receipt that switched its estimated rate off gets no estimates back
    estimate_allowed = not any(r.id == ESTIMATED_RATE_ID and not r.enabled for r in rates)

    applied: dict[str, set[str]] = {}
    for item_id, tax_ids in answer.assignments.items():
        if item_id not in item_ids:
            logger.debug("Oracle returned unknown item id %r — ignored", item_id)
            continue
        ids = set()
        for tax_id in tax_ids:
            if tax_id in enabled_ids:
                ids.add(tax_id)
            elif estimate_allowed and (tax_id in declared or tax_id == ESTIMATED_RATE_ID):
                ids.add(ESTIMATED_RATE_ID)
            else:
                logger.debug("Oracle used undeclared tax id %r — ignored", tax_id)
        if ids:
            applied[item_id] = ids

    if not applied:
        return None

    merged_rates = list(rates)
    uses_estimate = any(ESTIMATED_RATE_ID in ids for ids in applied.values())
    if uses_estimate and not any(r.id == ESTIMATED_RATE_ID for r in rates):
        descriptions = [r.description for r in declared.values() if r.description]
        merged_rates.append(TaxRate(
            id=ESTIMATED_RATE_ID,
            name="; ".join(descriptions) or ESTIMATED_RATE_NAME,
            rate=None,
            estimated=True,
        ))

    return _build_result(items, merged_rates, ResolvedBy.ORACLE, applied)


async def attribute_taxes(
    items: Sequence[LineItem],
    tax_summary: TaxSummary,
    *,
    oracle: Optional[TaxOracle] = None,
    context: Optional[ReceiptContext] = None,
    tolerance_cents: int = TAX_TOLERANCE_CENTS,
    oracle_timeout: float = ORACLE_TIMEOUT_SECONDS,
) -> AttributionResult:
    """
    Decide which items were taxed.  Never raises for an unexplainable
    receipt — that comes back as ResolvedBy.UNRESOLVED.  Cancelling the
    caller cancels the in-flight oracle request.
    """
    _check_unique_ids(items)

    result = resolve_without_oracle(items, tax_summary, tolerance_cents)
    if result is not None:
        return result

    unresolved = _build_result(items, tax_summary.rates, ResolvedBy.UNRESOLVED, {})
    if oracle is None:
        logger.info("No tax oracle configured — leaving receipt unresolved")
        return unresolved

    try:
        answer = await asyncio.wait_for(
            oracle.classify(items, tax_summary.rates, context),
            timeout=oracle_timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Tax oracle timed out after %.1fs — receipt unresolved", oracle_timeout)
        return unresolved
    except OracleError as e:
        logger.warning("Tax oracle failed: %s — receipt unresolved", e)
        return unresolved
    except Exception as e:
        logger.warning("Tax oracle raised %s: %s — receipt unresolved", type(e).__name__, e)
        return unresolved

    merged = merge_oracle_result(items, tax_summary.rates, answer)
    if merged is None:
        logger.warning("Tax oracle returned no usable assignments — receipt unresolved")
        return unresolved

    logger.info("Oracle attributed taxes to %d of %d items",
                sum(1 for i in merged.items if i.applied_tax_ids), len(items))
    return merged
