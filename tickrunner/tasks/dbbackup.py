from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine

from tickrunner.core.config import Settings
from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.dbutils.export import DatabaseExport


STORAGE_KEY = "export"


def backup_filename(folder: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return str(Path(folder) / f"tickrunner-{stamp}.sql")


class DatabaseBackup:
    """
    dbbackup: one DatabaseExport step per invocation.

    The export cursor lives in storage under `export`; param `compress`
    overrides DBBACKUP_COMPRESS for this task.
    """

    def __init__(self, engine: Engine, settings: Settings, *, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.settings = settings
        self.logger = logger or logging.getLogger("db-export")

    def make_export(self, storage: KVBag, params: KVBag) -> DatabaseExport:
        filename = storage.get(f"{STORAGE_KEY}.output_filename") or backup_filename(self.settings.DBBACKUP_PATH)
        compress = params.get("compress")
        return DatabaseExport(
            filename,
            self.engine,
            compress=None if compress is None else bool(compress),
            compress_default=self.settings.DBBACKUP_COMPRESS,
            max_files=self.settings.DBBACKUP_MAXFILES,
            logger=self.logger,
        )

    def __call__(self, storage: KVBag, params: KVBag) -> Status:
        return self.make_export(storage, params).step_into(storage, STORAGE_KEY)
