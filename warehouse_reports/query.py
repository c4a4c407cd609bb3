from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Sequence, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined
from sqlalchemy import String, bindparam, create_engine, event, text
from sqlalchemy.engine import Connection, Engine

from warehouse_reports.tabular import QueryParameter, TabularResult

LOG = logging.getLogger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "templates"
TEMPLATE_SUFFIX = ".sql.j2"


class Warehouse:
    """
    Owns the SQLAlchemy engine for the reporting warehouse.

    Callers check connections out per unit of work; reset_pool() throws away
    every pooled connection so the next checkout opens a fresh one.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, command_timeout_s: int = 300) -> "Warehouse":
        engine = create_engine(url, pool_pre_ping=True)
        if engine.dialect.driver == "pyodbc":
            @event.listens_for(engine, "connect")
            def _set_command_timeout(dbapi_connection, connection_record) -> None:
                dbapi_connection.timeout = command_timeout_s
        LOG.debug("Warehouse engine created for dialect %s", engine.dialect.name)
        return cls(engine)

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            yield conn

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[Connection]:
        """One connection for the lifetime of a unit of work, opened and closed off the event loop."""
        conn = await asyncio.to_thread(self.engine.connect)
        try:
            yield conn
        finally:
            await asyncio.to_thread(conn.close)

    def reset_pool(self) -> None:
        LOG.info("Discarding pooled warehouse connections")
        self.engine.dispose()


def _get_template_env(templates_dir: Union[str, Path, None]) -> Environment:
    return Environment(
        loader=FileSystemLoader(str(templates_dir or DEFAULT_TEMPLATES_DIR)),
        autoescape=False,
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


class QueryExecutor:
    """
    Runs named query templates against the warehouse.

    Templates are Jinja2 files named <key>.sql.j2. Template variables shape the
    SQL text (static settings only); values supplied per call are always bound
    parameters (":name" in the SQL), never rendered into the text.

    Failure modes:
        - jinja2.TemplateNotFound if the key has no template
        - SQLAlchemy errors from the driver are propagated untouched; the
          retry layer decides whether they are worth another attempt
    """

    def __init__(
        self,
        warehouse: Warehouse,
        templates_dir: Union[str, Path, None] = None,
        template_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.warehouse = warehouse
        self._env = _get_template_env(templates_dir)
        self._context = dict(template_context or {})

    def render(self, template_key: str) -> str:
        template = self._env.get_template(template_key + TEMPLATE_SUFFIX)
        return template.render(**self._context)

    def statement(self, template_key: str, parameters: Sequence[QueryParameter] = ()):
        stmt = text(self.render(template_key))
        if parameters:
            stmt = stmt.bindparams(
                *(bindparam(p.name, p.value, type_=String(p.max_length)) for p in parameters)
            )
        return stmt

    def execute(
        self,
        template_key: str,
        parameters: Sequence[QueryParameter] = (),
        connection: Optional[Connection] = None,
    ) -> TabularResult:
        stmt = self.statement(template_key, parameters)
        if connection is None:
            with self.warehouse.connect() as conn:
                return self._read(conn, stmt)
        return self._read(connection, stmt)

    @staticmethod
    def _read(conn: Connection, stmt) -> TabularResult:
        result = conn.execute(stmt)
        columns = list(result.keys())
        return TabularResult.from_rows(columns, result)
