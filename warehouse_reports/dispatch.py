from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from warehouse_reports import encoding
from warehouse_reports.confirm import ExportConfirmer
from warehouse_reports.errors import ExportBatchError, InvariantViolation
from warehouse_reports.publish import ArtifactPublisher, package_report_name
from warehouse_reports.query import QueryExecutor, Warehouse
from warehouse_reports.retry import RetryExecutor
from warehouse_reports.tabular import ExportCandidate, QueryParameter, TabularResult

LOG = logging.getLogger(__name__)

DEFAULT_CONTAINER = "popularity"
DEFAULT_MAX_CONCURRENCY = 4

PACKAGE_REPORT_QUERY = "recentpopularity_by_package"
PACKAGE_ID_PARAM = "package_id"
PACKAGE_ID_MAX_LENGTH = 128
PACKAGE_ID_COLUMN = "PackageId"


@dataclass(frozen=True)
class AggregateReport:
    """A whole-dataset report: one query, one blob."""
    template_key: str
    blob_name: str


# Published in this order, before any per-package report.
PER_MONTH = AggregateReport("permonth", "permonth.json")
RECENT_POPULARITY_DETAIL = AggregateReport("recentpopularitydetail", "recentpopularitydetail.json")
RECENT_POPULARITY = AggregateReport("recentpopularity", "recentpopularity.json")
AGGREGATE_REPORTS: Tuple[AggregateReport, ...] = (PER_MONTH, RECENT_POPULARITY_DETAIL, RECENT_POPULARITY)


@dataclass
class ExportSummary:
    aggregate_urls: List[str] = field(default_factory=list)
    candidates: int = 0
    exported: int = 0
    recent_packages: int = 0
    failures: Dict[str, BaseException] = field(default_factory=dict)
    elapsed_s: float = 0.0


class ExportDispatcher:
    """
    Runs a full report export.

    Aggregate reports are produced one after another; per-package reports go
    through a pool of at most max_concurrency units in flight. Each unit
    (query, encode, publish, confirm) is retried as a whole, inside its own
    warehouse connection. A failing package never cancels its siblings: the
    batch runs to completion and then raises ExportBatchError.
    """

    def __init__(
        self,
        warehouse: Warehouse,
        queries: QueryExecutor,
        confirmer: ExportConfirmer,
        publisher: ArtifactPublisher,
        retry: RetryExecutor,
        container: str = DEFAULT_CONTAINER,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        export_recent_packages: bool = False,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.warehouse = warehouse
        self.queries = queries
        self.confirmer = confirmer
        self.publisher = publisher
        self.retry = retry
        self.container = container
        self.max_concurrency = max_concurrency
        self.export_recent_packages = export_recent_packages
        self.summary = ExportSummary()
        self._recent_popularity: Optional[TabularResult] = None

    async def run(self, aggregates: bool = True, bulk: bool = True) -> ExportSummary:
        LOG.info("Generate reports begin")
        before = time.monotonic()
        if aggregates:
            await self.run_aggregate_reports()
        if bulk:
            await self.run_bulk_export()
        self.summary.elapsed_s = time.monotonic() - before
        LOG.info("Generate reports end (%.1f seconds)", self.summary.elapsed_s)
        return self.summary

    async def run_aggregate_reports(self) -> None:
        for report in AGGREGATE_REPORTS:
            result = await self.retry.run(
                lambda report=report: self._create_aggregate_report(report),
                label=f"report {report.template_key}",
            )
            if report is RECENT_POPULARITY:
                self._recent_popularity = result

    async def _create_aggregate_report(self, report: AggregateReport) -> TabularResult:
        LOG.info("Create report %s", report.template_key)
        result = await asyncio.to_thread(self.queries.execute, report.template_key)
        url = await self._publish(report.blob_name, result)
        self.summary.aggregate_urls.append(url)
        return result

    async def run_bulk_export(self) -> None:
        """
        Export every pending package from a single upfront snapshot.

        Raises:
            InvariantViolation: the recent popularity report has no PackageId
                column (raised before any package is exported), or a package
                report breaks a result invariant (remaining units cancelled)
            ExportBatchError: after all packages were attempted, if any failed
        """
        candidates = await asyncio.to_thread(self.confirmer.list_candidates)
        self.summary.candidates = len(candidates)

        failures: Dict[str, BaseException] = {}
        if self.export_recent_packages and self._recent_popularity is not None:
            failures.update(await self.create_recent_package_reports(self._recent_popularity))
        failures.update(await self.create_all_package_reports(candidates))

        if failures:
            self.summary.failures.update(failures)
            raise ExportBatchError(failures)

    async def create_recent_package_reports(self, report: TabularResult) -> Dict[str, BaseException]:
        """Refresh the report of every package named in the recent popularity report. No confirm."""
        package_ids = report.column_values(PACKAGE_ID_COLUMN)
        LOG.info("Create recent package reports (count = %d)", len(package_ids))
        self.summary.recent_packages = len(package_ids)

        def unit(package_id: str) -> Callable[[], Awaitable[None]]:
            async def export() -> None:
                async with self.warehouse.scope() as conn:
                    await self._create_package_report(package_id, conn)
            return export

        return await self._run_pool([(pid, unit(pid)) for pid in package_ids])

    async def create_all_package_reports(
        self, candidates: Sequence[ExportCandidate]
    ) -> Dict[str, BaseException]:
        LOG.info("Creating %d package reports", len(candidates))
        before = time.monotonic()

        def unit(candidate: ExportCandidate) -> Callable[[], Awaitable[None]]:
            async def export() -> None:
                async with self.warehouse.scope() as conn:
                    await self._create_package_report(candidate.package_id, conn)
                    await asyncio.to_thread(self.confirmer.confirm, candidate, conn)
            return export

        failures = await self._run_pool([(c.package_id, unit(c)) for c in candidates])
        self.summary.exported = len(candidates) - len(failures)
        LOG.info(
            "Package reports complete in %.1f seconds (%d exported, %d failed)",
            time.monotonic() - before,
            self.summary.exported,
            len(failures),
        )
        return failures

    async def _create_package_report(self, package_id: str, conn) -> str:
        LOG.info("Create package report for %s", package_id)
        param = QueryParameter(PACKAGE_ID_PARAM, PACKAGE_ID_MAX_LENGTH, package_id)
        result = await asyncio.to_thread(self.queries.execute, PACKAGE_REPORT_QUERY, [param], conn)
        return await self._publish(package_report_name(package_id), result)

    async def _publish(self, blob_name: str, result: TabularResult) -> str:
        return await self.publisher.publish(
            self.container, blob_name, encoding.JSON_CONTENT_TYPE, encoding.encode(result)
        )

    async def _run_pool(
        self, units: Sequence[Tuple[str, Callable[[], Awaitable[None]]]]
    ) -> Dict[str, BaseException]:
        """
        Run units under the concurrency bound and collect per-package failures.

        An InvariantViolation is not a package failure: the remaining units
        are cancelled and it propagates to abort the run.
        """
        sem = asyncio.Semaphore(self.max_concurrency)
        failures: Dict[str, BaseException] = {}

        async def worker(key: str, action: Callable[[], Awaitable[None]]) -> None:
            async with sem:
                try:
                    await self.retry.run(action, label=f"package {key}")
                except InvariantViolation:
                    raise
                except Exception as e:
                    LOG.error("Export of %s abandoned: %s: %s", key, type(e).__name__, e)
                    failures[key] = e

        tasks = [asyncio.ensure_future(worker(key, action)) for key, action in units]
        try:
            await asyncio.gather(*tasks)
        except InvariantViolation:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return failures
