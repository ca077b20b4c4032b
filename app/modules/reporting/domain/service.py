"""
Cost Analysis Service
Reads a customer's FOCUS exports from blob storage and rolls them into the
cost analysis view. Nothing is persisted; the read path is stateless.
"""
import asyncio
from datetime import date
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.customer import Customer
from app.modules.reporting.domain.aggregator import CostAggregator, filter_to_period
from app.modules.reporting.domain.deduplicator import deduplicate
from app.modules.reporting.domain.export_selector import ExportSelector
from app.modules.reporting.domain.extractor import FocusRecordExtractor
from app.modules.reporting.domain.periods import resolve_period
from app.schemas.costs import (
    CostAnalysis,
    CostAnalysisDiagnostics,
    CostRecord,
    ExportFile,
    ExportSource,
    ReportingPeriod,
)
from app.shared.adapters.blob_store import ExportBlobStore, build_container_url, parse_sas_token
from app.shared.adapters.secret_store import SecretStore, get_secret_store
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    AdapterError,
    ConfigurationError,
    ResourceNotFoundError,
    StorageAccessError,
)

logger = structlog.get_logger()

MAX_REPORTED_COLUMNS = 50
NO_DATA_MESSAGE = "No cost data found for the selected period. Check that FOCUS exports are configured and have run."


class CostAnalysisService:
    def __init__(
        self,
        db: AsyncSession,
        secret_store: Optional[SecretStore] = None,
        blob_store_factory: Callable[[str], ExportBlobStore] = ExportBlobStore,
        extractor: Optional[FocusRecordExtractor] = None,
        selector: Optional[ExportSelector] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.secret_store = secret_store or get_secret_store()
        self.blob_store_factory = blob_store_factory
        self.extractor = extractor or FocusRecordExtractor()
        self.selector = selector or ExportSelector()

    async def get_customer(self, customer_id: UUID) -> Customer:
        customer = await self.db.get(Customer, customer_id)
        if customer is None:
            raise ResourceNotFoundError(f"Customer {customer_id} not found")
        if not customer.finops_storage_account:
            raise ConfigurationError("FinOps storage account is not configured for this customer")
        if not customer.finops_sas_secret_ref:
            raise ConfigurationError("FinOps SAS token is not configured for this customer")
        return customer

    async def analyze(
        self,
        customer_id: UUID,
        period: Optional[str] = None,
        days: Optional[int] = None,
        today: Optional[date] = None
    ) -> CostAnalysis:
        """
        Build the cost analysis for one customer and period.

        Raises ResourceNotFoundError / ConfigurationError before touching
        storage, and StorageAccessError when the SAS is rejected. Anything
        else that goes wrong with individual files lands in diagnostics.
        """
        today = today or date.today()
        customer = await self.get_customer(customer_id)
        window = resolve_period(period, days, today)
        log = logger.bind(customer_id=str(customer_id), period=window.key)

        sas = await self.secret_store.get_secret(customer.finops_sas_secret_ref)
        container_url = build_container_url(
            customer.finops_storage_account,
            customer.finops_container or self.settings.DEFAULT_FINOPS_CONTAINER,
            sas,
            self.settings.BLOB_ENDPOINT_TEMPLATE
        )
        diagnostics = CostAnalysisDiagnostics(sas_token=parse_sas_token(sas))

        async with self.blob_store_factory(container_url) as store:
            try:
                blobs = await store.list_exports()
            except StorageAccessError:
                raise
            except AdapterError as e:
                log.warning("cost_export_listing_failed", error=e.message)
                diagnostics.listing_errors.append(e.message)
                blobs = []

            files = self.selector.catalog(blobs)
            diagnostics.total_files_found = len(files)
            diagnostics.date_ranges_in_storage = sorted({f.date_range_key for f in files})

            main_files, comparison_files = self._plan(files, window)
            diagnostics.selected_folders = sorted(
                {f"{f.date_range_key}/{f.export_timestamp}" for f in main_files + comparison_files}
            )
            if window.source == ExportSource.MONTHLY:
                diagnostics.monthly_files_selected = len(main_files)
            else:
                diagnostics.daily_files_selected = len(main_files)
                diagnostics.monthly_files_selected = len(comparison_files)

            main_raw, comparison_raw = await asyncio.gather(
                self._load(store, main_files, diagnostics, today),
                self._load(store, comparison_files, diagnostics, today),
            )

        main_unique, diagnostics.duplicates_removed = deduplicate(main_raw)
        comparison_unique, diagnostics.comparison_duplicates_removed = deduplicate(comparison_raw)
        diagnostics.records_extracted = len(main_raw)
        diagnostics.comparison_records_extracted = len(comparison_raw)

        records = filter_to_period(main_unique, window.start, window.end)
        if window.source == ExportSource.MONTHLY:
            # last month's monthly exports are both the period and its comparison
            comparison = records
        else:
            comparison = filter_to_period(comparison_unique, window.comparison_start, window.comparison_end)

        analysis = CostAggregator.summarize(
            str(customer_id),
            window,
            records,
            comparison_records=comparison,
            fallback_records=main_unique,
            today=today
        )
        analysis.diagnostics = diagnostics
        if not analysis.has_data:
            analysis.message = NO_DATA_MESSAGE

        log.info(
            "cost_analysis_complete",
            files=diagnostics.files_processed,
            failed=len(diagnostics.files_failed),
            records=analysis.record_count,
            total_cost=analysis.total_cost
        )
        return analysis

    def _plan(self, files: Sequence[ExportFile], window: ReportingPeriod) -> Tuple[List[ExportFile], List[ExportFile]]:
        """
        Files to download for the period and for last month's comparison.

        Daily periods widen the daily selection back to the start of last
        month so the last-month fallback and last week have data.
        """
        selection = self.selector.select(files, window)
        if window.source == ExportSource.MONTHLY:
            # the period is last month itself; its files already are the comparison
            return selection.main, []

        wide_start = min(window.start, window.comparison_start)
        return self.selector.daily_files(files, wide_start, window.end), selection.comparison

    async def _load(
        self,
        store: ExportBlobStore,
        files: Sequence[ExportFile],
        diagnostics: CostAnalysisDiagnostics,
        today: date
    ) -> List[CostRecord]:
        semaphore = asyncio.Semaphore(self.settings.EXPORT_DOWNLOAD_CONCURRENCY)

        async def load_one(export: ExportFile) -> List[CostRecord]:
            async with semaphore:
                try:
                    content = await store.download(export.path)
                except StorageAccessError:
                    raise
                except AdapterError as e:
                    logger.warning("cost_export_download_failed", path=export.path, error=e.message)
                    diagnostics.files_failed.append(export.path)
                    return []

            result = await asyncio.to_thread(self.extractor.extract, content, export.path, today)
            if result.failed:
                diagnostics.files_failed.append(export.path)
                return []

            diagnostics.files_processed += 1
            for column in result.columns:
                if column not in diagnostics.available_columns and len(diagnostics.available_columns) < MAX_REPORTED_COLUMNS:
                    diagnostics.available_columns.append(column)
            return result.records

        per_file = await asyncio.gather(*(load_one(f) for f in files))
        return [record for records in per_file for record in records]
