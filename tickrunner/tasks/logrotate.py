from __future__ import annotations

import gzip
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status


# files smaller than this are left alone
MIN_ROTATE_SIZE = 1048576


class LogRotate:
    """
    logrotate: housekeeping of the log folder.

    `*.log` files above `min_size` bytes are rotated into `name.log.1[.gz]`
    (older rotations shift up to `files`, the oldest is dropped) and
    truncated. `backup_*.log` files are never rotated; they are deleted
    once older than `keep_days`. Zero disables the respective action.
    """

    def __init__(
        self,
        folder: str,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.folder = Path(folder)
        self.logger = logger or logging.getLogger("tasks.logrotate")
        self.clock = clock

    def __call__(self, storage: KVBag, params: KVBag) -> Status:
        files = int(params.get("files", 3))
        keep_days = int(params.get("keep_days", 14))
        min_size = int(params.get("min_size", MIN_ROTATE_SIZE))
        compress = bool(params.get("compress", True))

        if files == 0 and keep_days == 0:
            self.logger.info("Nothing to do; log rotation and old log removal are both disabled")
            return Status.OK
        if not self.folder.is_dir():
            self.logger.info("Log folder %s does not exist; nothing to do", self.folder)
            return Status.OK

        self.logger.info("Scanning log folder %s", self.folder)
        for path in sorted(self.folder.glob("*.log")):
            if not path.is_file():
                continue
            if path.name.startswith("backup_"):
                if keep_days and self.clock() - path.stat().st_mtime > keep_days * 86400:
                    path.unlink(missing_ok=True)
                    self.logger.info("Deleted the old backup log file %s", path)
                continue
            if files and path.stat().st_size >= min_size:
                self.rotate(path, files, compress)
        return Status.OK

    def rotate(self, path: Path, files: int, compress: bool) -> None:
        suffix = ".gz" if compress else ""

        def rotated(n: int) -> Path:
            return path.with_name(f"{path.name}.{n}{suffix}")

        rotated(files).unlink(missing_ok=True)
        for n in range(files - 1, 0, -1):
            if rotated(n).exists():
                rotated(n).rename(rotated(n + 1))

        if compress:
            with open(path, "rb") as src, gzip.open(rotated(1), "wb") as dst:
                shutil.copyfileobj(src, dst)
        else:
            shutil.copyfile(path, rotated(1))
        # truncate in place so open handles keep writing to the same file
        with open(path, "r+b") as fp:
            fp.truncate(0)
        self.logger.info("Rotated log file %s", path)
