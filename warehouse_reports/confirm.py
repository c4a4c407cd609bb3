from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.engine import Connection

from warehouse_reports.errors import InvariantViolation
from warehouse_reports.query import QueryExecutor
from warehouse_reports.tabular import ExportCandidate

LOG = logging.getLogger(__name__)

LIST_CANDIDATES_QUERY = "list_export_candidates"
CONFIRM_EXPORT_QUERY = "confirm_package_exported"


class ExportConfirmer:
    """
    Talks to the warehouse's export bookkeeping.

    list_candidates() takes the snapshot of packages with pending downloads;
    confirm() hands the snapshot's dirty count back once that package's report
    has been published. The warehouse clears only that many pending changes,
    so downloads recorded after the snapshot keep the package dirty.
    """

    def __init__(self, queries: QueryExecutor) -> None:
        self.queries = queries

    def list_candidates(self, connection: Optional[Connection] = None) -> List[ExportCandidate]:
        stmt = self.queries.statement(LIST_CANDIDATES_QUERY)
        if connection is None:
            with self.queries.warehouse.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        else:
            rows = connection.execute(stmt).fetchall()

        candidates: List[ExportCandidate] = []
        for row in rows:
            if len(row) < 2:
                raise InvariantViolation(
                    f"{LIST_CANDIDATES_QUERY} must return (package id, dirty count), got {len(row)} column(s)"
                )
            candidates.append(ExportCandidate(package_id=str(row[0]), dirty_count=row[1]))
        return candidates

    def confirm(self, candidate: ExportCandidate, connection: Optional[Connection] = None) -> None:
        LOG.info("ConfirmPackageExported for %s (dirty count %d)", candidate.package_id, candidate.dirty_count)
        stmt = self.queries.statement(CONFIRM_EXPORT_QUERY)
        params = {"package_id": candidate.package_id, "dirty_count": candidate.dirty_count}
        if connection is None:
            with self.queries.warehouse.connect() as conn:
                conn.execute(stmt, params)
                conn.commit()
        else:
            connection.execute(stmt, params)
            connection.commit()
