"""SQLAlchemy implementation of the database collaborator."""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from sqlalchemy import (
    MetaData,
    Table,
    bindparam,
    column,
    create_engine,
    delete,
    insert,
    inspect,
    select,
    table,
    text,
    update,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.schema import CreateTable

from site_migrator.core.exceptions import StorageUnavailable
from site_migrator.database.base import DatabaseClient, Row


logger = logging.getLogger(__name__)


class SqlAlchemyDatabaseClient(DatabaseClient):
    """Database collaborator backed by a SQLAlchemy engine."""

    def __init__(self, url: str, insert_batch_size: int = 500, engine: Optional[Engine] = None):
        """Create the client.

        Args:
            url: SQLAlchemy database URL
            insert_batch_size: Rows per executemany batch in ``bulk_insert``
            engine: Pre-built engine, mainly for tests
        """
        self.url = url
        self.insert_batch_size = max(1, insert_batch_size)
        self.engine = engine or self._create_engine(url)

    @staticmethod
    def _create_engine(url: str) -> Engine:
        connect_args = {}
        if make_url(url).get_backend_name() == "sqlite":
            # units run in worker threads
            connect_args["check_same_thread"] = False
        return create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def _connect(self, transactional: bool = False) -> Iterator[Connection]:
        try:
            conn = self.engine.connect()
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(
                f"Database is unreachable: {e.orig if hasattr(e, 'orig') else e}",
                details={"url": self.engine.url.render_as_string(hide_password=True)}
            ) from e

        with conn:
            if transactional:
                with conn.begin():
                    yield conn
            else:
                yield conn

    def _quote(self, identifier: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(identifier)

    def list_tables(self, prefix: str = "") -> List[str]:
        with self._connect() as conn:
            names = inspect(conn).get_table_names()
        return sorted(name for name in names if name.startswith(prefix))

    def get_create_statement(self, table_name: str) -> str:
        with self._connect() as conn:
            if self.dialect_name == "sqlite":
                ddl = conn.execute(
                    text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
                    {"name": table_name}
                ).scalar()
            elif self.dialect_name in ("mysql", "mariadb"):
                row = conn.exec_driver_sql(f"SHOW CREATE TABLE {self._quote(table_name)}").first()
                ddl = row[1] if row else None
            else:
                reflected = Table(table_name, MetaData(), autoload_with=conn)
                ddl = str(CreateTable(reflected).compile(dialect=self.engine.dialect)).strip()

        if not ddl:
            raise LookupError(f"No such table: {table_name}")
        return ddl

    def select_all(self, table_name: str) -> List[Row]:
        with self._connect() as conn:
            result = conn.exec_driver_sql(f"SELECT * FROM {self._quote(table_name)}")
            return [dict(row) for row in result.mappings()]

    def execute_ddl(self, ddl: str) -> None:
        with self._connect(transactional=True) as conn:
            conn.exec_driver_sql(ddl)

    def bulk_insert(self, table_name: str, rows: Sequence[Row]) -> int:
        if not rows:
            return 0

        inserted = 0
        with self._connect(transactional=True) as conn:
            batch: List[Row] = []
            batch_columns: Optional[tuple] = None
            for row in rows:
                columns = tuple(row)
                if batch and (columns != batch_columns or len(batch) >= self.insert_batch_size):
                    inserted += self._insert_batch(conn, table_name, batch_columns, batch)
                    batch = []
                batch_columns = columns
                batch.append(row)
            if batch:
                inserted += self._insert_batch(conn, table_name, batch_columns, batch)

        logger.debug(f"Inserted {inserted} rows into {table_name}")
        return inserted

    @staticmethod
    def _insert_batch(conn: Connection, table_name: str, columns: tuple, batch: List[Row]) -> int:
        target = table(table_name, *[column(name) for name in columns])
        conn.execute(insert(target), batch)
        return len(batch)

    def drop_table(self, table_name: str) -> None:
        with self._connect(transactional=True) as conn:
            conn.exec_driver_sql(f"DROP TABLE IF EXISTS {self._quote(table_name)}")

    def table_exists(self, table_name: str) -> bool:
        with self._connect() as conn:
            return inspect(conn).has_table(table_name)

    def count_rows(self, table_name: str) -> int:
        with self._connect() as conn:
            return conn.exec_driver_sql(f"SELECT COUNT(*) FROM {self._quote(table_name)}").scalar() or 0

    def select_rows(self, table_name: str, column_name: str, values: Sequence[Any]) -> List[Row]:
        if not values:
            return []

        statement = text(
            f"SELECT * FROM {self._quote(table_name)} WHERE {self._quote(column_name)} IN :values"
        ).bindparams(bindparam("values", expanding=True))
        rows: List[Row] = []
        values = list(values)
        with self._connect() as conn:
            for start in range(0, len(values), self.insert_batch_size):
                chunk = values[start:start + self.insert_batch_size]
                rows.extend(dict(row) for row in conn.execute(statement, {"values": chunk}).mappings())
        return rows

    def delete_rows(self, table_name: str, column_name: str, values: Sequence[Any]) -> int:
        if not values:
            return 0

        target = table(table_name, column(column_name))
        deleted = 0
        values = list(values)
        with self._connect(transactional=True) as conn:
            for start in range(0, len(values), self.insert_batch_size):
                chunk = values[start:start + self.insert_batch_size]
                result = conn.execute(delete(target).where(target.c[column_name].in_(chunk)))
                deleted += result.rowcount or 0
        return deleted

    @staticmethod
    def _options_table(options_table: str):
        return table(options_table, column("option_name"), column("option_value"))

    def get_option(self, options_table: str, name: str) -> Optional[str]:
        options = self._options_table(options_table)
        with self._connect() as conn:
            return conn.execute(
                select(options.c.option_value).where(options.c.option_name == name)
            ).scalar()

    def set_option(self, options_table: str, name: str, value: str) -> None:
        options = self._options_table(options_table)
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                update(options).where(options.c.option_name == name).values(option_value=value)
            )
            if not result.rowcount:
                conn.execute(insert(options).values(option_name=name, option_value=value))

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()
