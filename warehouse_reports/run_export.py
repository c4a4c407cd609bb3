#!/usr/bin/env python3
"""
Report export CLI.

Usage:
    python -m warehouse_reports.run_export                    # aggregates, then every pending package
    python -m warehouse_reports.run_export --skip-aggregates  # per-package reports only
    python -m warehouse_reports.run_export --help

Environment variables:
    NUGET_WAREHOUSE_SQL_AZURE_CONNECTION_STRING: warehouse database (SQLAlchemy URL or ODBC string)
    NUGET_WAREHOUSE_REPORTS_STORAGE: Azure storage connection string for the reports container
    WAREHOUSE_REPORTS_*: tuning knobs, see warehouse_reports/config.py
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from warehouse_reports.config import ExportConfig, load_config_from_env
from warehouse_reports.confirm import ExportConfirmer
from warehouse_reports.dispatch import ExportDispatcher, ExportSummary
from warehouse_reports.errors import ConfigError, ExportBatchError, InvariantViolation
from warehouse_reports.publish import ArtifactPublisher, blob_service_from_connection_string
from warehouse_reports.query import QueryExecutor, Warehouse
from warehouse_reports.retry import RetryExecutor

LOG = logging.getLogger("warehouse_reports")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[warehouse-reports] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # the storage SDK logs every request and response at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)


async def run_once(cfg: ExportConfig, aggregates: bool = True, bulk: bool = True) -> ExportSummary:
    service = blob_service_from_connection_string(cfg.reports_storage, timeout_s=cfg.http_timeout_s)
    warehouse = Warehouse.from_url(cfg.warehouse_url, command_timeout_s=cfg.command_timeout_s)
    queries = QueryExecutor(warehouse, templates_dir=cfg.templates_dir)
    retry = RetryExecutor(
        max_attempts=cfg.max_attempts,
        backoff_s=cfg.retry_backoff_s,
        recover=warehouse.reset_pool,
    )
    try:
        async with service:
            dispatcher = ExportDispatcher(
                warehouse=warehouse,
                queries=queries,
                confirmer=ExportConfirmer(queries),
                publisher=ArtifactPublisher(service),
                retry=retry,
                container=cfg.container,
                max_concurrency=cfg.max_concurrency,
                export_recent_packages=cfg.export_recent_packages,
            )
            return await dispatcher.run(aggregates=aggregates, bulk=bulk)
    finally:
        warehouse.reset_pool()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for a report export run.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = argparse.ArgumentParser(
        description="Publish warehouse popularity reports to blob storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--skip-aggregates", action="store_true", help="Do not publish the aggregate reports")
    parser.add_argument("--skip-bulk", action="store_true", help="Do not publish per-package reports")
    parser.add_argument("--max-concurrency", type=int, help="Per-package reports in flight (default: 4)")
    parser.add_argument("--templates-dir", type=str, help="Directory holding <name>.sql.j2 query templates")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        cfg = load_config_from_env()
    except ConfigError as e:
        LOG.error("%s", e)
        return 1

    if args.max_concurrency is not None:
        if args.max_concurrency < 1:
            LOG.error("--max-concurrency must be >= 1")
            return 1
        cfg.max_concurrency = args.max_concurrency
    if args.templates_dir:
        cfg.templates_dir = args.templates_dir

    try:
        summary = asyncio.run(run_once(cfg, aggregates=not args.skip_aggregates, bulk=not args.skip_bulk))
    except ExportBatchError as e:
        LOG.error("%s", e)
        for package_id, exc in sorted(e.failures.items()):
            LOG.error("  %s: %s: %s", package_id, type(exc).__name__, exc)
        return 1
    except (ConfigError, InvariantViolation) as e:
        LOG.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception:
        LOG.exception("Report export failed")
        return 1

    LOG.info("Summary:")
    LOG.info("  Aggregate reports: %d", len(summary.aggregate_urls))
    LOG.info("  Candidates: %d", summary.candidates)
    LOG.info("  Exported: %d", summary.exported)
    if summary.recent_packages:
        LOG.info("  Recent package reports: %d", summary.recent_packages)
    return 0


if __name__ == "__main__":
    sys.exit(main())
