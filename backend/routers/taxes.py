"""
Taxes Router

POST /api/taxes/attribute  — decide which line items were taxed
POST /api/taxes/reconcile  — compare computed totals with the printed ones
POST /api/taxes/analyze    — attribute + reconcile + category totals in one call
"""
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException

from db.database import get_db
from models.schemas import (
    AnalyzeRequest,
    AttributeRequest,
    AttributionResult,
    ReceiptTaxAnalysis,
    ReconcileRequest,
    ReconciliationReport,
)
from services import tax_oracle
from services.category_aggregator import aggregate_by_category
from services.reconciliation import reconcile, verification_message
from services.tax_attribution import AttributionInputError, attribute_taxes, describe_resolution
from services.tax_oracle import CachedTaxOracle, ClaudeTaxOracle, TaxOracle

logger = logging.getLogger("apportion.taxes")
router = APIRouter()


async def get_tax_oracle(
    db: aiosqlite.Connection = Depends(get_db),
) -> Optional[TaxOracle]:
    """Dependency: the cached Claude oracle, or None when no API key is configured."""
    if not tax_oracle.ANTHROPIC_API_KEY:
        return None
    return CachedTaxOracle(ClaudeTaxOracle(), db)


@router.post("/attribute", response_model=AttributionResult)
async def attribute(
    req: AttributeRequest,
    oracle: Optional[TaxOracle] = Depends(get_tax_oracle),
):
    try:
        return await attribute_taxes(req.items, req.tax_summary,
                                     oracle=oracle, context=req.context)
    except AttributionInputError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/reconcile", response_model=ReconciliationReport)
async def reconcile_receipt(req: ReconcileRequest):
    return reconcile(req.attribution, req.reported)


@router.post("/analyze", response_model=ReceiptTaxAnalysis)
async def analyze(
    req: AnalyzeRequest,
    oracle: Optional[TaxOracle] = Depends(get_tax_oracle),
):
    """
    Full pass for the review screen: attribution, reconciliation against the
    printed totals, per-category rows and the user-facing status line.
    """
    try:
        result = await attribute_taxes(req.items, req.tax_summary,
                                       oracle=oracle, context=req.context)
    except AttributionInputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    report = reconcile(result, req.reported)
    if report.mismatches:
        logger.info("Receipt reconciles with %d mismatch(es): %s",
                    len(report.mismatches), ", ".join(k.value for k in report.kinds))

    return ReceiptTaxAnalysis(
        attribution=result,
        reconciliation=report,
        categories=aggregate_by_category(result),
        status_message=describe_resolution(result.resolved_by),
        verification_message=verification_message(report),
    )
