from __future__ import annotations

import asyncio
import threading
import time
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from sqlalchemy import create_engine, text

from warehouse_reports.confirm import ExportConfirmer
from warehouse_reports.query import QueryExecutor, Warehouse
from warehouse_reports.retry import RetryExecutor
from warehouse_reports.tabular import ExportCandidate, QueryParameter, TabularResult

# SQLite stand-ins for the warehouse query templates.
SQLITE_TEMPLATES = {
    "permonth": """
        SELECT month AS "Month", SUM(downloads) AS "Downloads"
        FROM downloads GROUP BY month ORDER BY month
    """,
    "recentpopularity": """
        SELECT package_id AS "PackageId", SUM(downloads) AS "Downloads"
        FROM downloads GROUP BY package_id ORDER BY SUM(downloads) DESC, package_id
    """,
    "recentpopularitydetail": """
        SELECT package_id AS "PackageId", version AS "PackageVersion", SUM(downloads) AS "Downloads"
        FROM downloads GROUP BY package_id, version ORDER BY package_id, version
    """,
    "recentpopularity_by_package": """
        SELECT version AS "PackageVersion", SUM(downloads) AS "Downloads"
        FROM downloads WHERE package_id = :package_id
        GROUP BY version ORDER BY version
    """,
    "list_export_candidates": """
        SELECT package_id, dirty_count FROM export_state ORDER BY package_id
    """,
    "confirm_package_exported": """
        UPDATE export_state SET dirty_count = dirty_count - :dirty_count, exported = exported + 1
        WHERE package_id = :package_id
    """,
}


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    path = tmp_path / "templates"
    path.mkdir()
    for key, sql in SQLITE_TEMPLATES.items():
        (path / f"{key}.sql.j2").write_text(sql, encoding="utf-8")
    return path


@pytest.fixture
def warehouse(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'warehouse.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE downloads (package_id TEXT, version TEXT, month TEXT, downloads INTEGER)"
        ))
        conn.execute(text(
            "CREATE TABLE export_state (package_id TEXT PRIMARY KEY, dirty_count INTEGER, exported INTEGER DEFAULT 0)"
        ))
        conn.execute(
            text("INSERT INTO downloads VALUES (:p, :v, :m, :d)"),
            [
                {"p": "Foo.Bar", "v": "1.0.0", "m": "2014-01", "d": 10},
                {"p": "Foo.Bar", "v": "1.1.0", "m": "2014-02", "d": 5},
                {"p": "BAZ.Qux", "v": "2.0.0", "m": "2014-02", "d": 7},
            ],
        )
        conn.execute(
            text("INSERT INTO export_state (package_id, dirty_count) VALUES (:p, :c)"),
            [{"p": "Foo.Bar", "c": 3}, {"p": "BAZ.Qux", "c": 0}],
        )
    wh = Warehouse(engine)
    yield wh
    engine.dispose()


@pytest.fixture
def queries(warehouse: Warehouse, templates_dir: Path) -> QueryExecutor:
    return QueryExecutor(warehouse, templates_dir=templates_dir)


@pytest.fixture
def confirmer(queries: QueryExecutor) -> ExportConfirmer:
    return ExportConfirmer(queries)


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry(no_sleep: RecordingSleep) -> RetryExecutor:
    return RetryExecutor(max_attempts=3, backoff_s=20.0, sleep=no_sleep)


class FakeWarehouse:
    """Hands out a fresh token per scope and counts pool resets."""

    def __init__(self) -> None:
        self.resets = 0
        self.scopes_opened = 0
        self._lock = threading.Lock()

    @asynccontextmanager
    async def scope(self):
        with self._lock:
            self.scopes_opened += 1
            token = object()
        yield token

    def reset_pool(self) -> None:
        self.resets += 1


class FakeQueries:
    """
    Canned results per template key; per-package reports echo the package id.

    Tracks how many per-package pipelines are between their query and their
    confirm at any moment.
    """

    def __init__(
        self,
        results: Optional[Dict[str, TabularResult]] = None,
        failing: Optional[Dict[str, BaseException]] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.results = results or {
            "permonth": TabularResult.from_rows(["Month", "Downloads"], [["2014-01", 10]]),
            "recentpopularitydetail": TabularResult.from_rows(
                ["PackageId", "PackageVersion", "Downloads"], [["Foo.Bar", "1.0.0", 10]]
            ),
            "recentpopularity": TabularResult.from_rows(["PackageId", "Downloads"], [["Foo.Bar", 15]]),
        }
        self.failing = failing or {}
        self.delay_s = delay_s
        self.calls: List[Tuple[str, Tuple[QueryParameter, ...], object]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def execute(self, template_key: str, parameters: Sequence[QueryParameter] = (), connection=None):
        with self._lock:
            self.calls.append((template_key, tuple(parameters), connection))
        if template_key != "recentpopularity_by_package":
            return self.results[template_key]
        package_id = parameters[0].value
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.delay_s:
            time.sleep(self.delay_s)
        if package_id in self.failing:
            with self._lock:
                self.in_flight -= 1
            raise self.failing[package_id]
        return TabularResult.from_rows(["PackageId", "Downloads"], [[package_id, 1]])

    def finished(self) -> None:
        with self._lock:
            self.in_flight -= 1


class FakeConfirmer:
    def __init__(self, candidates: Sequence[ExportCandidate], queries: FakeQueries, events: list) -> None:
        self.candidates = list(candidates)
        self.queries = queries
        self.events = events
        self.confirmed: List[Tuple[str, int]] = []
        self._lock = threading.Lock()

    def list_candidates(self, connection=None) -> List[ExportCandidate]:
        return list(self.candidates)

    def confirm(self, candidate: ExportCandidate, connection=None) -> None:
        with self._lock:
            self.confirmed.append((candidate.package_id, candidate.dirty_count))
            self.events.append(("confirm", candidate.package_id))
        self.queries.finished()


class FakePublisher:
    def __init__(self, events: list) -> None:
        self.events = events
        self.blobs: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.containers: set = set()

    async def publish(self, container: str, blob_name: str, content_type: str, content: bytes) -> str:
        await asyncio.sleep(0)
        self.containers.add(container)
        self.blobs[blob_name] = content
        self.content_types[blob_name] = content_type
        self.events.append(("publish", blob_name))
        return f"https://example.invalid/{container}/{blob_name}"


class FakeContainerClient:
    def __init__(self, service: "FakeBlobService", name: str) -> None:
        self.service = service
        self.name = name

    async def upload_blob(self, name, data, overwrite=False, content_settings=None, **kwargs):
        await asyncio.sleep(0)
        self.service.uploads.append((self.name, name, overwrite, content_settings.content_type))
        failure = self.service.failures.pop(name, None)
        if failure is not None:
            raise failure
        self.service.blobs[f"/{self.name}/{name}"] = (content_settings.content_type, data)
        return SimpleNamespace(url=f"{self.service.url}/{self.name}/{name}")


class FakeBlobService:
    """Stands in for azure.storage.blob.aio.BlobServiceClient; failures raise once per blob name."""

    def __init__(self, failures: Optional[Dict[str, BaseException]] = None) -> None:
        self.url = "https://stats.blob.core.windows.net"
        self.failures = dict(failures or {})
        self.uploads: List[tuple] = []
        self.blobs: Dict[str, tuple] = {}

    def get_container_client(self, container: str) -> FakeContainerClient:
        return FakeContainerClient(self, container)


@pytest.fixture
def fakes():
    class Fakes:
        Warehouse = FakeWarehouse
        Queries = FakeQueries
        Confirmer = FakeConfirmer
        Publisher = FakePublisher
        BlobService = FakeBlobService

    return Fakes
