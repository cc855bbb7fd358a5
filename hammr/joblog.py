# hammr/joblog.py
"""
Per-job and global monitor activity logs.

Monitor code logs through the standard logging module with `auction_id`
and `item_id` attached (see `job_logger`). `JobLogHandler` captures those
records into a `LogSink`:

  * FileLogSink    JSONL files under a directory, global file rotated
  * MemoryLogSink  bounded ring buffers, for read-only/ephemeral hosts

`select_sink` picks one by probing whether the log directory is writable.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from hammr.settings import LogCfg

log = logging.getLogger("hammr.joblog")

MONITOR_LOGGER = "hammr.monitor"
_JOB_FILE_RE = re.compile(r"^job-(\d+-\d+)\.jsonl$")


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    auction_id: Optional[int] = None
    item_id: Optional[int] = None
    metadata: Any = None

    @property
    def job_key(self) -> Optional[str]:
        if self.auction_id is None or self.item_id is None:
            return None
        return f"{self.auction_id}-{self.item_id}"

    def to_json(self) -> str:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return json.dumps(data, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, line: str) -> "LogEntry":
        data = json.loads(line)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


class LogSink(ABC):
    @abstractmethod
    def append(self, entry: LogEntry) -> None: ...

    @abstractmethod
    def job_entries(
        self, auction_id: int, item_id: int, count: Optional[int] = None
    ) -> list[LogEntry]:
        """Newest first."""

    @abstractmethod
    def global_entries(self, count: Optional[int] = None) -> list[LogEntry]:
        """Newest first."""

    @abstractmethod
    def keys(self) -> list[str]: ...

    @abstractmethod
    def purge(self, auction_id: int, item_id: int) -> None: ...


class MemoryLogSink(LogSink):
    def __init__(self, per_job: int = 100, global_max: int = 200):
        self._per_job = per_job
        self._jobs: dict[str, deque[LogEntry]] = {}
        self._global: deque[LogEntry] = deque(maxlen=global_max)

    def append(self, entry: LogEntry) -> None:
        key = entry.job_key
        if key is not None:
            self._jobs.setdefault(key, deque(maxlen=self._per_job)).append(entry)
        self._global.append(entry)

    def job_entries(self, auction_id, item_id, count=None):
        entries = list(self._jobs.get(f"{auction_id}-{item_id}", ()))
        return _newest_first(entries, count)

    def global_entries(self, count=None):
        return _newest_first(list(self._global), count)

    def keys(self):
        return sorted(self._jobs)

    def purge(self, auction_id, item_id):
        self._jobs.pop(f"{auction_id}-{item_id}", None)


class FileLogSink(LogSink):
    GLOBAL_FILE = "global.jsonl"

    def __init__(self, directory: str | Path, max_bytes: int, backup_count: int):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # reuse the stdlib rotation: global.jsonl -> global.jsonl.1 ... .N
        self._global = RotatingFileHandler(
            self.directory / self.GLOBAL_FILE,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        self._global.setFormatter(logging.Formatter("%(message)s"))

    @staticmethod
    def available(directory: str | Path) -> bool:
        """Can we create the directory and write a file into it?"""
        path = Path(directory)
        marker = path / ".write-check"
        try:
            path.mkdir(parents=True, exist_ok=True)
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
        except OSError:
            return False
        return os.access(path, os.W_OK)

    def job_file(self, auction_id: int, item_id: int) -> Path:
        return self.directory / f"job-{auction_id}-{item_id}.jsonl"

    def append(self, entry: LogEntry) -> None:
        line = entry.to_json()
        with self._lock:
            if entry.job_key is not None:
                with self.job_file(entry.auction_id, entry.item_id).open(
                    "a", encoding="utf-8"
                ) as fh:
                    fh.write(line + "\n")
            self._global.emit(
                logging.makeLogRecord({"msg": line, "levelno": logging.INFO})
            )

    def job_entries(self, auction_id, item_id, count=None):
        return _newest_first(_read_jsonl(self.job_file(auction_id, item_id)), count)

    def global_entries(self, count=None):
        return _newest_first(_read_jsonl(self.directory / self.GLOBAL_FILE), count)

    def keys(self):
        found = set()
        for path in self.directory.iterdir():
            m = _JOB_FILE_RE.match(path.name)
            if m:
                found.add(m.group(1))
        return sorted(found)

    def purge(self, auction_id, item_id):
        # job files are deleted with the job so the disk does not fill up
        with self._lock:
            self.job_file(auction_id, item_id).unlink(missing_ok=True)

    def close(self) -> None:
        self._global.close()


def _read_jsonl(path: Path) -> list[LogEntry]:
    if not path.exists():
        return []
    entries = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(LogEntry.from_json(line))
        except (ValueError, TypeError, KeyError):
            log.debug("Skipping malformed log line in %s", path.name)
    return entries


def _newest_first(entries: list[LogEntry], count: Optional[int]) -> list[LogEntry]:
    # stable sort, reversed: for equal timestamps the later append wins
    ordered = sorted(entries, key=lambda e: e.timestamp)[::-1]
    return ordered[:count] if count else ordered


def select_sink(cfg: LogCfg) -> LogSink:
    if FileLogSink.available(cfg.directory):
        return FileLogSink(cfg.directory, cfg.max_bytes, cfg.backup_count)
    log.warning("Log directory %s is not writable; keeping job logs in memory", cfg.directory)
    return MemoryLogSink(cfg.per_job_entries, cfg.global_entries)


class JobLogHandler(logging.Handler):
    """Logging handler that records monitor activity into a LogSink."""

    def __init__(self, sink: LogSink, level: int = logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created, timezone.utc).replace(tzinfo=None),
                level=record.levelname,
                message=record.getMessage(),
                auction_id=getattr(record, "auction_id", None),
                item_id=getattr(record, "item_id", None),
                metadata=getattr(record, "metadata", None),
            )
            self.sink.append(entry)
        except Exception:
            self.handleError(record)


class JobLogger(logging.LoggerAdapter):
    """Adds the job key to every record and keeps per-call `extra` too."""

    def process(self, msg, kwargs):
        prefix = f"[{self.extra['auction_id']}-{self.extra['item_id']}]"
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return f"{prefix} {msg}", kwargs


def job_logger(auction_id: int, item_id: int) -> JobLogger:
    return JobLogger(
        logging.getLogger(MONITOR_LOGGER),
        {"auction_id": auction_id, "item_id": item_id},
    )


def attach_sink(sink: LogSink, level: int = logging.DEBUG) -> JobLogHandler:
    handler = JobLogHandler(sink)
    monitor = logging.getLogger(MONITOR_LOGGER)
    if monitor.level == logging.NOTSET or monitor.level > level:
        monitor.setLevel(level)
    monitor.addHandler(handler)
    return handler


def detach_sink(handler: JobLogHandler) -> None:
    logging.getLogger(MONITOR_LOGGER).removeHandler(handler)
