"""Database collaborator interface and dump/restore models."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field


Row = Dict[str, Any]


class TableDump(BaseModel):
    """Schema and rows of a single table."""
    name: str
    schema_ddl: str
    rows: List[Row] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class DatabaseDump(BaseModel):
    """Serialized relational state of a site."""
    site_url: str = ""
    home_url: str = ""
    table_prefix: str = ""
    paths: Dict[str, str] = Field(default_factory=dict)
    tables: Dict[str, TableDump] = Field(default_factory=dict)
    dump_warnings: List[str] = Field(default_factory=list)

    @property
    def table_names(self) -> List[str]:
        return list(self.tables)

    def add_table(self, table: TableDump) -> None:
        self.tables[table.name] = table


class RestoreReport(BaseModel):
    """Outcome of restoring one or more tables."""
    restored: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    preserved: List[str] = Field(default_factory=list)
    failures: Dict[str, str] = Field(default_factory=dict)
    rows_inserted: int = 0
    warnings: List[str] = Field(default_factory=list)

    @property
    def is_successful(self) -> bool:
        return not self.failures

    def merge(self, other: "RestoreReport") -> None:
        self.restored.extend(other.restored)
        self.skipped.extend(other.skipped)
        self.preserved.extend(other.preserved)
        self.failures.update(other.failures)
        self.rows_inserted += other.rows_inserted
        self.warnings.extend(other.warnings)


class DatabaseClient(ABC):
    """Narrow interface the codec needs from the host database.

    Implementations raise ``StorageUnavailable`` when the database
    cannot be reached at all. Any other failure is raised as-is and
    treated by the caller as a failure of the table at hand.
    """

    @abstractmethod
    def list_tables(self, prefix: str = "") -> List[str]:
        """Names of the tables starting with ``prefix``, sorted."""
        pass

    @abstractmethod
    def get_create_statement(self, table: str) -> str:
        """The engine's canonical DDL recreating ``table``."""
        pass

    @abstractmethod
    def select_all(self, table: str) -> List[Row]:
        """Every row of ``table`` as column -> value mappings."""
        pass

    @abstractmethod
    def execute_ddl(self, ddl: str) -> None:
        pass

    @abstractmethod
    def bulk_insert(self, table: str, rows: Sequence[Row]) -> int:
        """Insert rows and return how many were written."""
        pass

    @abstractmethod
    def drop_table(self, table: str) -> None:
        pass

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    def count_rows(self, table: str) -> int:
        pass

    @abstractmethod
    @abstractmethod
    def select_rows(self, table: str, column: str, values: Sequence[Any]) -> List[Row]:
        """Rows whose ``column`` is one of ``values``."""
        pass

    @abstractmethod
    def delete_rows(self, table: str, column: str, values: Sequence[Any]) -> int:
        """Delete rows whose ``column`` is one of ``values``."""
        pass

    @abstractmethod
    def get_option(self, options_table: str, name: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_option(self, options_table: str, name: str, value: str) -> None:
        pass

    @abstractmethod
    def ping(self) -> None:
        """Raise ``StorageUnavailable`` when the database is unreachable."""
        pass

    def close(self) -> None:
        pass
