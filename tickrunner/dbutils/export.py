"""
Database export.

Writes an SQL file with the contents of the application's own tables, one
bounded step per call so it can run inside a cron tick:

    init -> preamble -> backup -> epilogue -> compress -> cleanup -> finish

The `backup` state handles one batch of rows of one table per step. Rows
are accumulated into a multi-row INSERT which is flushed whenever the
next row would push it past MAX_PACKET bytes. Nothing (open files,
connections) is held between steps; the whole cursor lives in `dump()`.
"""

from __future__ import annotations

import gzip
import logging
import shutil
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import MetaData, Table, select
from sqlalchemy.engine import Engine

from tickrunner.fsm import ResumableFSM


# Maximum size of an individual INSERT command, in bytes
MAX_PACKET = 524288

# table name -> rows per batch
DEFAULT_TABLES: Dict[str, int] = {
    "common": 100,
    "tasks": 50,
    "queue": 100,
}


def sql_literal(value: Any, *, backslash_escapes: bool = False) -> str:
    """
    Render a value as an SQL literal. MySQL treats backslashes inside
    strings as escapes; standard SQL (SQLite, PostgreSQL) only doubles quotes.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex() + "'"
    if isinstance(value, datetime):
        value = value.strftime("%Y-%m-%d %H:%M:%S.%f")
    elif isinstance(value, (date, time)):
        value = value.isoformat()
    text = str(value)
    if backslash_escapes:
        text = text.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")
    text = text.replace("'", "''")
    return f"'{text}'"


class DatabaseExport(ResumableFSM):
    STATES = ("init", "preamble", "backup", "epilogue", "compress", "cleanup", "finish")
    PERSISTED = (
        "output_filename",
        "table_stack",
        "current_table",
        "current_offset",
        "batch_size",
        "buffer",
        "compress",
    )

    def __init__(
        self,
        output_filename: str,
        engine: Engine,
        *,
        compress: Optional[bool] = None,
        compress_default: bool = True,
        max_files: int = 15,
        tables: Optional[Dict[str, int]] = None,
        app_version: str = "0.0.0-dev",
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger or logging.getLogger("db-export"))
        self.output_filename = str(output_filename)
        self.engine = engine
        self.compress: Optional[bool] = compress
        self.compress_default = compress_default
        self.max_files = max_files
        self.tables = dict(tables or DEFAULT_TABLES)
        self.app_version = app_version

        self.table_stack: List[List[Any]] = []
        self.current_table: Optional[str] = None
        self.current_offset: Optional[int] = None
        self.batch_size: Optional[int] = None
        self.buffer: Optional[str] = None

        Path(self.output_filename).parent.mkdir(parents=True, exist_ok=True)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _quote_name(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote(name)

    def _write(self, text: str, *, truncate: bool = False) -> None:
        with open(self.output_filename, "w" if truncate else "a", encoding="utf-8") as fp:
            fp.write(text)

    # --- states ---------------------------------------------------------

    def step_init(self) -> None:
        self.logger.info("Database export: starting backup to %s", self.output_filename)
        self.table_stack = [[name, batch] for name, batch in self.tables.items()]
        self.current_table = None
        self.current_offset = None
        self.buffer = None

        stamp = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
        self._write(
            f"-- tickrunner {self.app_version}\n--\n-- Base tables backup taken on {stamp}\n\n\n",
            truncate=True,
        )
        self.advance_state()

    def step_preamble(self) -> None:
        self.logger.info("Database export: writing preamble")
        names = [self._quote_name(name) for name in self.tables]
        out = ""
        if self.dialect == "mysql":
            out += "-- Locking tables for writing\n"
            out += "LOCK TABLES " + ",".join(f"{n} WRITE" for n in names) + ";\n\n"
            out += "-- Disabling foreign key checks for efficiency\n"
            out += "SET FOREIGN_KEY_CHECKS=0;\n\n"
            out += "-- Truncating tables before inserting new values\n"
            out += "".join(f"TRUNCATE TABLE {n};\n" for n in names)
        else:
            out += "-- Emptying tables before inserting new values\n"
            out += "".join(f"DELETE FROM {n};\n" for n in names)
        self._write(out + "\n\n")
        self.advance_state()

    def step_backup(self) -> None:
        if not self.current_table:
            self.logger.debug("Getting next table to back up")
            if self.buffer:
                self._flush_buffer()
            if not self.table_stack:
                self.logger.debug("No more tables to back up")
                self.advance_state()
                return
            self.current_table, self.batch_size = self.table_stack.pop(0)
            self.current_offset = None
            self.logger.debug("Next table: %s -- batch size: %d rows", self.current_table, self.batch_size)
            self._write(f"\n-- Contents of the {self.current_table} table\n\n")

        # Starting backup on a new table?
        if self.current_offset is None:
            self._flush_buffer()
            self.current_offset = 0

        table = self._table(self.current_table)
        columns = [c.name for c in table.columns]
        if not self.buffer:
            self.buffer = self._insert_into(columns)

        self.logger.debug("Backing up from offset %d, up to %d rows", self.current_offset, self.batch_size)
        q = select(table).limit(int(self.batch_size or 100)).offset(int(self.current_offset))
        order_by = list(table.primary_key.columns) or list(table.columns)[:1]
        q = q.order_by(*order_by)

        mysql = self.dialect == "mysql"
        rows = 0
        with self.engine.connect() as conn:
            for row in conn.execute(q):
                rows += 1
                line = "\t(" + ",".join(sql_literal(v, backslash_escapes=mysql) for v in row) + ")"
                if len(line.encode("utf-8")) + len(self.buffer.encode("utf-8")) > MAX_PACKET:
                    self._flush_buffer()
                    self.buffer = self._insert_into(columns)
                if self.buffer.endswith(")"):
                    self.buffer += ",\n"
                self.buffer += line

        if rows == 0:
            if self.current_offset == 0:
                self.logger.debug("The table was empty.")
                self.buffer = None
                self._write("-- (empty table)\n")
            else:
                self.logger.debug("No more rows found; end of table backup.")
            self._flush_buffer()
            self.current_table = None
            return

        self.logger.debug("Backed up %d rows.", rows)
        self.current_offset += rows

    def step_epilogue(self) -> None:
        self.logger.info("Database export: writing epilogue")
        if self.dialect == "mysql":
            self._write(
                "\n\n-- Re-enabling foreign key checks\nSET FOREIGN_KEY_CHECKS=1;\n\n"
                "-- Unlocking tables for writing\nUNLOCK TABLES;\n\n"
            )
        else:
            self._write("\n\n-- End of backup\n\n")
        self.advance_state()

    def step_compress(self) -> None:
        should_compress = self.compress if self.compress is not None else self.compress_default
        if not should_compress:
            self.logger.info("Compressing backups is disabled; skipping over")
            self.advance_state()
            return

        self.logger.info("Database export: compressing output")
        source = Path(self.output_filename)
        target = source.with_name(source.name + ".gz")
        with open(source, "rb") as src, gzip.open(target, "wb", compresslevel=9) as dst:
            shutil.copyfileobj(src, dst)
        source.unlink()
        self.advance_state()

    def step_cleanup(self) -> None:
        """Prune the oldest backup files in the output folder."""
        path = Path(self.output_filename).parent
        if not path.is_dir():
            self.logger.warning("The database backup output folder %s does not exist or is not readable", path)
            self.advance_state()
            return

        files = [p for p in path.iterdir() if p.is_file() and (p.name.endswith(".sql") or p.name.endswith(".sql.gz"))]
        self.logger.debug("Found %d database backup file(s)", len(files))
        if self.max_files < 1 or len(files) <= self.max_files:
            self.logger.debug("No need to delete files (I am told to keep %d file(s))", self.max_files)
            self.advance_state()
            return

        files.sort(key=lambda p: p.stat().st_mtime)
        doomed = files[: -self.max_files]
        self.logger.debug("I will delete %d old database backup file(s)", len(doomed))
        for p in doomed:
            self.logger.debug("Deleting old database backup file %s", p)
            p.unlink(missing_ok=True)
        self.advance_state()

    def step_finish(self) -> None:
        self.logger.info("Database export: just finished")

    # --- helpers --------------------------------------------------------

    def _table(self, name: str) -> Table:
        return Table(name, MetaData(), autoload_with=self.engine)

    def _insert_into(self, columns: Sequence[str]) -> str:
        cols = ",".join(self._quote_name(c) for c in columns)
        return f"INSERT INTO {self._quote_name(self.current_table)} ({cols}) VALUES\n"

    def _flush_buffer(self) -> None:
        # a buffer holding only the INSERT INTO header has no rows to write
        if not self.buffer or not self.buffer.endswith(")"):
            self.buffer = None
            return
        self._write(self.buffer + ";\n")
        self.buffer = None

    @property
    def final_filename(self) -> str:
        should_compress = self.compress if self.compress is not None else self.compress_default
        return self.output_filename + (".gz" if should_compress else "")
