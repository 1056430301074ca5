"""
Streaming CSV export for normalized mailbox records.

Rows are appended and flushed one at a time, so an interrupted run leaves a
valid file: the header plus every row completed so far.
"""
import csv
import logging
import os
from datetime import datetime
from typing import IO, Iterator, Optional

from .constants import (
    EXPORT_COLUMNS,
    EXPORT_FILENAME_PREFIX,
    EXPORT_TIMESTAMP_FORMAT,
)
from .errors import SinkWriteFailed
from .models import NormalizedRecord

logger = logging.getLogger(__name__)


def export_path_candidates(path: str) -> Iterator[str]:
    """Yield path, then path with _1, _2, ... inserted before the extension."""
    root, ext = os.path.splitext(path)
    yield path
    suffix = 1
    while True:
        yield f"{root}_{suffix}{ext}"
        suffix += 1


def build_export_path(output_dir: str, now: Optional[datetime] = None) -> str:
    """
    Build a timestamped export path that does not collide with an existing file.

    Example: ./mailbox_reports/MailboxReport_2026-10-17-142501.csv
    """
    stamp = (now or datetime.now()).strftime(EXPORT_TIMESTAMP_FORMAT)
    base = os.path.join(output_dir, f"{EXPORT_FILENAME_PREFIX}_{stamp}.csv")
    return next(path for path in export_path_candidates(base) if not os.path.exists(path))


class CsvExportSink:
    """
    Append-only CSV sink holding the output file for the lifetime of a run.

    Usage:
        with CsvExportSink(path) as sink:
            sink.append(record)
    """

    def __init__(self, path: str, encoding: str = 'utf-8'):
        self.path = path
        self.encoding = encoding
        self.rows_written = 0
        self._file: Optional[IO[str]] = None
        self._writer: Optional[csv.DictWriter] = None

    def __enter__(self) -> "CsvExportSink":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def open(self) -> None:
        """
        Create the file and write the header row.

        An existing file is never overwritten: if the path is taken by the
        time the file is created, the next free _N suffix is used and
        self.path is updated to match.
        """
        directory = os.path.dirname(self.path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file = self._create_exclusive()
            self._writer = csv.DictWriter(self._file, fieldnames=EXPORT_COLUMNS)
            self._writer.writeheader()
            self._file.flush()
        except OSError as e:
            self.close()
            raise SinkWriteFailed(self.path, str(e)) from e
        logger.info(f"Writing report to {self.path}")

    def _create_exclusive(self) -> IO[str]:
        for candidate in export_path_candidates(self.path):
            try:
                handle = open(candidate, 'x', newline='', encoding=self.encoding)
            except FileExistsError:
                logger.debug(f"{candidate} already exists, trying the next name")
                continue
            self.path = candidate
            return handle
        raise SinkWriteFailed(self.path, "no free file name")

    def append(self, record: NormalizedRecord) -> None:
        """Append one record and flush it to disk."""
        if self._file is None or self._writer is None:
            raise SinkWriteFailed(self.path, "sink is not open")
        try:
            self._writer.writerow(record.to_row())
            self._file.flush()
        except OSError as e:
            raise SinkWriteFailed(self.path, str(e)) from e
        self.rows_written += 1

    def close(self) -> None:
        """Flush and close the file. Safe to call more than once."""
        if self._file is None:
            return
        handle, self._file = self._file, None
        self._writer = None
        try:
            handle.flush()
        except OSError as e:
            logger.error(f"Failed to flush {self.path}: {e}")
        finally:
            handle.close()
