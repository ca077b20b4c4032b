"""
FinOps Cost Analysis API

- GET  /customers/{customer_id}/finops/cost-analysis
- POST /customers/{customer_id}/finops/run-exports
"""
from datetime import date
from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.reporting.domain.export_runner import ExportRunner
from app.modules.reporting.domain.periods import MAX_DAYS
from app.modules.reporting.domain.service import CostAnalysisService
from app.schemas.costs import CostAnalysis, ExportRunResult
from app.shared.adapters.cost_cache import CostCache, get_cost_cache
from app.shared.adapters.secret_store import SecretStore, get_secret_store
from app.shared.db.session import get_db

router = APIRouter(prefix="/customers/{customer_id}/finops", tags=["FinOps"])
logger = structlog.get_logger()


@router.get("/cost-analysis", response_model=CostAnalysis, response_model_by_alias=True)
async def get_cost_analysis(
    customer_id: UUID,
    period: Optional[str] = Query(default=None, description="mtd, lastmonth, last30, last60 or last90"),
    days: Optional[int] = Query(default=None, ge=1, le=MAX_DAYS, description="Rolling window when no period is given"),
    refresh: bool = Query(default=False, description="Bypass the result cache"),
    db: AsyncSession = Depends(get_db),
    secret_store: SecretStore = Depends(get_secret_store),
    cache: CostCache = Depends(get_cost_cache)
):
    """
    Aggregated costs for the period, built from the customer's FOCUS exports.

    Always returns a well-formed analysis; per-file problems are reported in
    `diagnostics` rather than failing the request.
    """
    today = date.today()
    key_period = (period or "").lower()
    if not refresh:
        cached = await cache.get_analysis(str(customer_id), key_period, days, today)
        if cached is not None:
            return cached

    service = CostAnalysisService(db, secret_store=secret_store)
    analysis = await service.analyze(customer_id, period=period, days=days, today=today)
    await cache.set_analysis(str(customer_id), key_period, days, today, analysis)
    return analysis


@router.post("/run-exports", response_model=ExportRunResult, response_model_by_alias=True)
async def run_exports(
    customer_id: UUID,
    db: AsyncSession = Depends(get_db),
    secret_store: SecretStore = Depends(get_secret_store),
    cache: CostCache = Depends(get_cost_cache)
):
    """Trigger the customer's Cost Management exports into their FinOps storage account."""
    customer = await CostAnalysisService(db, secret_store=secret_store).get_customer(customer_id)
    result = await ExportRunner(secret_store=secret_store).run_exports(customer)
    if result.triggered:
        # fresh exports will land shortly; don't serve the old view
        await cache.invalidate_customer(str(customer_id))
    return result
