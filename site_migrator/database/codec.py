"""
Relational dump/restore codec.

This module serializes the site's tables (engine DDL plus rows) into a
``DatabaseDump`` and restores dumps by recreating each table and
re-inserting its rows.

Restore policy:

* Every table in the dump is replaced: dropped, recreated from its DDL
  and refilled. Tables absent from the dump are never touched.
* Protected tables (session, rate-limit and lock tables by default)
  are left untouched and reported as preserved.
* A non-empty selection scopes only the content tables (``posts``,
  ``postmeta`` and ``options``). Their rows are filtered to the
  selection and merged by key instead of replacing the whole table.
  All other tables follow the fixed replace policy.
"""

import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from site_migrator.core.exceptions import (
    CancellationRequested,
    SiteMigratorError,
    StorageUnavailable,
    UnitExecutionError,
)
from site_migrator.database.base import DatabaseClient, DatabaseDump, RestoreReport, Row, TableDump
from site_migrator.database.replacer import EnvironmentReplacer
from site_migrator.models.selection import ContentSelection


logger = logging.getLogger(__name__)

CORE_TABLE_SUFFIXES = ("posts", "options", "users", "usermeta", "terms", "term_taxonomy")
CONTENT_TABLE_SUFFIXES = ("posts", "postmeta", "options")
CRITICAL_OPTION_NAMES = ("default_role", "admin_email")
DEFAULT_PROTECTED_SUFFIXES = ("sessions", "rate_limits", "migrator_locks")

_VALID_TABLE_NAME = re.compile(r"^[A-Za-z0-9_$]+$")


def detect_table_prefix(table_names: Iterable[str]) -> str:
    """
    Guess the table prefix from core table names.

    A candidate prefix is accepted once at least three core tables
    (posts, options, users, ...) carry it.
    """
    names = list(table_names)
    name_set = set(names)
    for name in names:
        for suffix in CORE_TABLE_SUFFIXES:
            if not name.endswith(suffix):
                continue
            prefix = name[: -len(suffix)]
            matches = sum(1 for test in CORE_TABLE_SUFFIXES if f"{prefix}{test}" in name_set)
            if matches >= 3:
                return prefix
    return ""


def replace_table_prefix(name: str, source_prefix: str, target_prefix: str) -> str:
    if source_prefix and name.startswith(source_prefix):
        return target_prefix + name[len(source_prefix):]
    return name


def rewrite_ddl_prefix(ddl: str, source_prefix: str, target_prefix: str) -> str:
    """Rename prefixed identifiers inside a CREATE statement."""
    if not source_prefix or source_prefix == target_prefix:
        return ddl
    pattern = re.compile(r"(?<![A-Za-z0-9_$])" + re.escape(source_prefix) + r"(?=[A-Za-z0-9_$])")
    return pattern.sub(target_prefix, ddl)


class DatabaseCodec:
    """Dumps and restores a site's tables through a DatabaseClient."""

    def __init__(
        self,
        client: DatabaseClient,
        filesystem=None,
        table_prefix: str = "wp_",
        protected_suffixes: Optional[Sequence[str]] = None
    ):
        """Create the codec.

        Args:
            client: Database collaborator
            filesystem: Optional file-system collaborator supplying path roots
            table_prefix: Prefix of this installation's tables
            protected_suffixes: Table suffixes never replaced on restore
        """
        self.client = client
        self.filesystem = filesystem
        self.table_prefix = table_prefix
        if protected_suffixes is None:
            protected_suffixes = DEFAULT_PROTECTED_SUFFIXES
        self.protected_suffixes = tuple(protected_suffixes)
        self._cancellation_check: Optional[Callable[[], bool]] = None

    # ------------------------------------------------------------------
    # helpers

    def set_cancellation_check(self, check: Optional[Callable[[], bool]]) -> None:
        """Install a callable returning True once the running job is cancelled."""
        self._cancellation_check = check

    def _check_cancelled(self) -> None:
        if self._cancellation_check is not None and self._cancellation_check():
            raise CancellationRequested()

    @property
    def options_table(self) -> str:
        return f"{self.table_prefix}options"

    def protected_tables(self) -> Set[str]:
        return {f"{self.table_prefix}{suffix}" for suffix in self.protected_suffixes}

    def table_suffix(self, name: str) -> str:
        if name.startswith(self.table_prefix):
            return name[len(self.table_prefix):]
        return name

    def read_site_urls(self) -> Dict[str, str]:
        """Current ``siteurl`` and ``home`` option values, empty when unknown."""
        urls = {"site_url": "", "home_url": ""}
        if not self.client.table_exists(self.options_table):
            return urls
        urls["site_url"] = self.client.get_option(self.options_table, "siteurl") or ""
        urls["home_url"] = self.client.get_option(self.options_table, "home") or urls["site_url"]
        return urls

    def describe(self) -> DatabaseDump:
        """A dump carrying only metadata: URLs, prefix and path roots."""
        urls = self.read_site_urls()
        paths = self.filesystem.path_roots() if self.filesystem is not None else {}
        return DatabaseDump(
            site_url=urls["site_url"],
            home_url=urls["home_url"],
            table_prefix=self.table_prefix,
            paths=paths,
        )

    def list_tables(self, table_filter: Optional[Callable[[str], bool]] = None) -> List[str]:
        names = self.client.list_tables(self.table_prefix)
        if table_filter is not None:
            names = [name for name in names if table_filter(name)]
        return names

    # ------------------------------------------------------------------
    # dump

    def _read_table(self, name: str) -> TableDump:
        schema_ddl = self.client.get_create_statement(name)
        rows = self.client.select_all(name)
        return TableDump(name=name, schema_ddl=schema_ddl, rows=rows)

    def dump(self, table_filter: Optional[Callable[[str], bool]] = None) -> DatabaseDump:
        """
        Dump every table matching the installation prefix.

        Args:
            table_filter: Optional predicate selecting table names

        Returns:
            DatabaseDump; tables whose read failed are listed in
            ``dump_warnings`` instead of failing the whole dump
        """
        dump = self.describe()

        for name in self.list_tables(table_filter):
            self._check_cancelled()
            try:
                dump.add_table(self._read_table(name))
            except SiteMigratorError:
                raise
            except Exception as e:
                warning = f"Skipped table {name}: {e}"
                logger.warning(warning)
                dump.dump_warnings.append(warning)

        logger.info(f"Dumped {len(dump.tables)} tables")
        return dump

    def dump_table(self, name: str) -> TableDump:
        """Dump a single table; raises UnitExecutionError on failure."""
        self._check_cancelled()
        try:
            return self._read_table(name)
        except SiteMigratorError:
            raise
        except Exception as e:
            raise UnitExecutionError(
                f"Failed to read table {name}: {e}",
                unit_label=name,
                cause=e
            ) from e

    # ------------------------------------------------------------------
    # restore

    def restore(
        self,
        dump: DatabaseDump,
        selection: Optional[ContentSelection] = None,
        replacer: Optional[EnvironmentReplacer] = None
    ) -> RestoreReport:
        """
        Restore every table of a dump, in dump order.

        Args:
            dump: Dump to restore
            selection: Optional selection scoping the content tables
            replacer: Optional environment replacer applied to row values

        Returns:
            RestoreReport
        """
        report = RestoreReport(warnings=list(dump.dump_warnings))
        source_prefix = self.source_prefix(dump)

        for table_dump in dump.tables.values():
            self.restore_table(
                table_dump,
                selection=selection,
                report=report,
                source_prefix=source_prefix,
                replacer=replacer
            )

        logger.info(
            f"Restore finished: {len(report.restored)} restored, "
            f"{len(report.preserved)} preserved, {len(report.failures)} failed"
        )
        return report

    def source_prefix(self, dump: DatabaseDump) -> str:
        if dump.table_prefix:
            return dump.table_prefix
        detected = detect_table_prefix(dump.tables)
        if detected:
            logger.info(f"Auto-detected source table prefix: {detected!r}")
        return detected

    def target_table(self, name: str, source_prefix: str) -> Optional[str]:
        """Name a dumped table is restored under, or None when restore leaves it alone."""
        target = replace_table_prefix(name, source_prefix, self.table_prefix)
        if not _VALID_TABLE_NAME.match(target) or target in self.protected_tables():
            return None
        return target

    def restore_table(
        self,
        table_dump: TableDump,
        selection: Optional[ContentSelection] = None,
        report: Optional[RestoreReport] = None,
        source_prefix: Optional[str] = None,
        replacer: Optional[EnvironmentReplacer] = None
    ) -> RestoreReport:
        """Restore one table into ``report`` (a fresh report when omitted)."""
        if report is None:
            report = RestoreReport()
        self._check_cancelled()

        source_prefix = source_prefix if source_prefix is not None else self.table_prefix
        name = replace_table_prefix(table_dump.name, source_prefix, self.table_prefix)
        ddl = rewrite_ddl_prefix(table_dump.schema_ddl, source_prefix, self.table_prefix)

        if not _VALID_TABLE_NAME.match(name):
            report.skipped.append(name)
            report.warnings.append(f"Skipped table with invalid name: {name}")
            return report

        if name in self.protected_tables():
            logger.info(f"Preserving protected table {name}")
            report.preserved.append(name)
            return report

        rows = table_dump.rows
        if replacer is not None:
            rows = replacer.replace_rows(rows)

        suffix = self.table_suffix(name)
        if selection is not None and not selection.is_empty and suffix in CONTENT_TABLE_SUFFIXES:
            return self._merge_content_table(name, suffix, ddl, rows, selection, report)

        return self._replace_table(name, ddl, rows, report)

    def _replace_table(self, name: str, ddl: str, rows: List[Row], report: RestoreReport) -> RestoreReport:
        critical = self._backup_critical_options() if name == self.options_table else {}

        try:
            self.client.drop_table(name)
            self.client.execute_ddl(ddl)
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.error(f"Schema failed for table {name}: {e}")
            report.failures[name] = f"schema: {e}"
            return report

        if not self._insert(name, rows, report):
            return report

        if critical:
            self._restore_critical_options(critical)

        report.restored.append(name)
        logger.debug(f"Replaced table {name} with {len(rows)} rows")
        return report

    def _insert(self, name: str, rows: List[Row], report: RestoreReport) -> bool:
        self._check_cancelled()
        try:
            report.rows_inserted += self.client.bulk_insert(name, rows)
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.error(f"Row insert failed for table {name}: {e}")
            report.failures[name] = f"rows: {e}"
            return False
        return True

    def _merge_content_table(
        self,
        name: str,
        suffix: str,
        ddl: str,
        rows: List[Row],
        selection: ContentSelection,
        report: RestoreReport
    ) -> RestoreReport:
        selected_rows = filter_content_rows(suffix, rows, selection)

        try:
            if not self.client.table_exists(name):
                self.client.execute_ddl(ddl)
            if suffix == "posts":
                self.client.delete_rows(name, "ID", [row["ID"] for row in selected_rows])
            elif suffix == "postmeta":
                self.client.delete_rows(name, "post_id", sorted(_selected_ids(selection)))
            else:
                self.client.delete_rows(name, "option_name", [row["option_name"] for row in selected_rows])
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.error(f"Merge failed for table {name}: {e}")
            report.failures[name] = f"merge: {e}"
            return report

        if self._insert(name, selected_rows, report):
            report.restored.append(name)
            logger.debug(f"Merged {len(selected_rows)} selected rows into {name}")
        return report

    def _backup_critical_options(self) -> Dict[str, str]:
        if not self.client.table_exists(self.options_table):
            return {}
        backup = {}
        for key in (f"{self.table_prefix}user_roles",) + CRITICAL_OPTION_NAMES:
            value = self.client.get_option(self.options_table, key)
            if value is not None:
                backup[key] = value
        return backup

    def _restore_critical_options(self, backup: Dict[str, str]) -> None:
        for key, value in backup.items():
            self.client.set_option(self.options_table, key, value)
        logger.info(f"Restored {len(backup)} critical options after replacing {self.options_table}")


def _selected_ids(selection: ContentSelection) -> Set[int]:
    return {item_id for _, item_id in selection.items}


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def filter_content_rows(suffix: str, rows: Iterable[Row], selection: ContentSelection) -> List[Row]:
    """Keep only the rows of a content table that the selection names."""
    if suffix == "posts":
        return [
            row for row in rows
            if selection.includes(str(row.get("post_type", "")), _as_int(row.get("ID")))
        ]

    if suffix == "postmeta":
        ids = _selected_ids(selection)
        return [row for row in rows if _as_int(row.get("post_id")) in ids]

    if suffix == "options":
        names = set(selection.option_keys) | set(selection.widget_groups)
        if selection.widget_groups:
            names.add("sidebars_widgets")
        return [row for row in rows if row.get("option_name") in names]

    return list(rows)
