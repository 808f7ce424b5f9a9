"""
FileVault Audit Logging: JSONL audit trail behind a best-effort sink.

One file per stream per day:

    {log_dir}/{object_type}/{category}/{YYYY-MM-DD}.jsonl[.gz]

- FileLogger: appends entries and reads them back (``filevault logs``)
- AsyncLogQueue: bounded buffer drained by a background thread
- log_*_event: entry builders for lifecycle, security and system events
- AuditSink: the boundary LifecycleService calls
- LogRetentionManager: gzips, then deletes, old daily files

Audit logging is best-effort. AuditSink.emit() logs its own failures and
never raises into a lifecycle operation.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from filevault.engine.config import LoggingConfig

logger = logging.getLogger("filevault.engine.logging")

OBJECT_TYPE_CATEGORIES = {
    "documents": ["execution", "security"],
    "containers": ["execution", "security"],
    "system": ["execution", "security"],
}

# Days a daily file is kept, per category
DEFAULT_RETENTION = {
    "execution": 90,
    "security": 365,
}

KIND_OBJECT_TYPES = {
    "document": "documents",
    "container": "containers",
}


class LogEntry:
    """One audit record and the stream it belongs to."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    @property
    def stream(self) -> Tuple[str, str]:
        return self.object_type, self.category

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


def _read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    opener = gzip.open if path.suffix == ".gz" else open
    try:
        with opener(path, "rt", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed audit line in %s", path)
    except OSError as e:
        logger.warning("Could not read audit file %s: %s", path, e)


def _matches(entry: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    return not filters or all(entry.get(k) == v for k, v in filters.items())


class FileLogger:
    """
    Appends audit entries to daily JSONL files and reads them back.

    Appends to one stream are serialized by a per-stream lock, so the flush
    thread and direct callers can share an instance.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._locks: Dict[Tuple[str, str], threading.Lock] = defaultdict(threading.Lock)
        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                self.stream_dir(object_type, category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def stream_dir(self, object_type: str, category: str) -> Path:
        return self._log_dir / object_type / category

    def day_file(self, object_type: str, category: str, day: Optional[date] = None) -> Path:
        return self.stream_dir(object_type, category) / f"{(day or date.today()).isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Append entries, opening each day file once per batch."""
        by_stream: Dict[Tuple[str, str], List[str]] = defaultdict(list)
        for entry in entries:
            by_stream[entry.stream].append(entry.to_json())

        for stream, lines in by_stream.items():
            with self._locks[stream], open(self.day_file(*stream), "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")

    def query(
        self,
        object_type: str,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read a stream back, oldest first, keeping the newest ``limit`` entries.

        The window defaults to the week ending today. ``filters`` keeps only
        entries whose top-level keys equal every given value. A day may have
        both a compressed and a plain file; compressed lines come first.
        """
        stream = self.stream_dir(object_type, category)
        if not stream.is_dir():
            return []
        end_date = end_date or date.today()
        start_date = start_date or end_date - timedelta(days=7)

        matched: List[Dict[str, Any]] = []
        day = start_date
        while day <= end_date:
            for suffix in (".jsonl.gz", ".jsonl"):
                path = stream / f"{day.isoformat()}{suffix}"
                if path.exists():
                    matched.extend(e for e in _read_jsonl(path) if _matches(e, filters))
            day += timedelta(days=1)
        return matched[-limit:] if limit else matched


class AsyncLogQueue:
    """
    Bounded in-memory buffer in front of a FileLogger.

    push() never blocks: when the buffer is full the entry is counted and
    dropped. A daemon thread wakes every ``flush_interval_ms`` and writes the
    buffer in batches of at most ``flush_batch_size``.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._file_logger = file_logger
        self._interval = flush_interval_ms / 1000.0
        self._batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="filevault-audit-flush", daemon=True)
        self._thread.start()
        logger.info("Audit queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread, then write whatever is still buffered."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.flush()
        logger.info(f"Audit queue stopped ({self._dropped} entries dropped)")

    def push(self, entry: LogEntry) -> bool:
        """Buffer an entry. Returns False when it was dropped."""
        try:
            self._queue.put_nowait(entry)
        except Full:
            self._dropped += 1
            return False
        return True

    def flush(self) -> None:
        while self._write_batch():
            pass

    def _run(self) -> None:
        while not self._stopping.wait(self._interval):
            self.flush()

    def _write_batch(self) -> int:
        batch: List[LogEntry] = []
        while len(batch) < self._batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._file_logger.write_batch(batch)
            except Exception as e:
                logger.error(f"Audit flush failed, {len(batch)} entries lost: {e}")
        return len(batch)

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def _base_entry(event: str, level: str, **fields: Any) -> Dict[str, Any]:
    """Timestamp, level and event, plus every field that carries a value."""
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    entry.update({k: v for k, v in fields.items() if v is not None and v != ""})
    return entry


def log_lifecycle_event(
    operation: str,
    entity_id: str,
    entity_kind: str,
    request_id: str,
    user_id: Any,
    version_number: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build an entity lifecycle entry (upload, rename, move, purge...)."""
    data = _base_entry(
        f"entity_{operation}",
        "INFO",
        entity_id=entity_id,
        request_id=request_id,
        user_id=user_id,
        operation=operation,
        entity_kind=entity_kind,
        version_number=version_number,
    )
    if details:
        data["details"] = details
    return LogEntry(KIND_OBJECT_TYPES.get(entity_kind, "system"), "execution", data)


def log_security_event(
    event: str,
    entity_id: str,
    entity_kind: str,
    operation: str,
    required_access: str,
    actual_access: str,
    user_id: Any,
    request_id: Optional[str] = None,
    level: str = "WARNING",
) -> LogEntry:
    """Build a security entry (access denied)."""
    data = _base_entry(
        event,
        level,
        entity_id=entity_id,
        request_id=request_id,
        user_id=user_id,
        entity_kind=entity_kind,
        operation=operation,
        required_access=required_access,
        actual_access=actual_access,
    )
    return LogEntry(KIND_OBJECT_TYPES.get(entity_kind, "system"), "security", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    data = _base_entry(event, level)
    if details:
        data["details"] = details
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Audit Sink
# ---------------------------------------------------------------------------

class AuditSink:
    """
    Best-effort audit boundary used by LifecycleService.

    Wraps an AsyncLogQueue when one is configured; with no queue, entries are
    only mirrored to the stdlib logger. emit() never raises.
    """

    def __init__(self, queue: Optional[AsyncLogQueue] = None):
        self._queue = queue

    def emit(self, entry: LogEntry) -> bool:
        try:
            logger.debug("audit %s/%s: %s", entry.object_type, entry.category, entry.data.get("event"))
            if self._queue is None:
                return False
            queued = self._queue.push(entry)
            if not queued:
                logger.warning("Audit queue full, entry dropped: %s", entry.data.get("event"))
            return queued
        except Exception as e:
            logger.error(f"Audit emit failed: {e}")
            return False

    @property
    def queue(self) -> Optional[AsyncLogQueue]:
        return self._queue


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def _file_day(path: Path) -> Optional[date]:
    try:
        return date.fromisoformat(path.name.split(".", 1)[0])
    except ValueError:
        return None


def _gzip_in_place(path: Path) -> bool:
    target = path.with_name(path.name + ".gz")
    try:
        with open(path, "rb") as src, gzip.open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
        path.unlink()
    except OSError as e:
        logger.error(f"Could not compress {path}: {e}")
        target.unlink(missing_ok=True)
        return False
    return True


class LogRetentionManager:
    """
    Applies the retention policy to daily audit files.

    A plain file older than ``compress_after_days`` is gzipped. Any file
    older than its category's retention is deleted.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = dict(DEFAULT_RETENTION, **(retention_days or {}))
        self._compress_after = compress_after_days

    @classmethod
    def from_config(cls, config: LoggingConfig) -> LogRetentionManager:
        """Build from the ``logging`` section of filevault.yaml."""
        return cls(
            log_dir=config.directory,
            retention_days={
                "execution": config.retention.execution_days,
                "security": config.retention.security_days,
            },
            compress_after_days=config.compress_after_days,
        )

    @property
    def retention_days(self) -> Dict[str, int]:
        return dict(self._retention)

    @property
    def compress_after_days(self) -> int:
        return self._compress_after

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """Returns counts: {"deleted": N, "compressed": M}."""
        today = today or date.today()
        result = {"deleted": 0, "compressed": 0}
        for path, category, day in self._dated_files():
            age = (today - day).days
            if age > self._retention.get(category, DEFAULT_RETENTION["execution"]):
                path.unlink()
                result["deleted"] += 1
            elif age > self._compress_after and path.suffix == ".jsonl":
                if _gzip_in_place(path):
                    result["compressed"] += 1
        logger.info(f"Audit log cleanup: {result}")
        return result

    def _dated_files(self) -> Iterator[Tuple[Path, str, date]]:
        for object_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for category in categories:
                stream = self._log_dir / object_type / category
                if not stream.is_dir():
                    continue
                for path in sorted(stream.iterdir()):
                    day = _file_day(path)
                    if day is not None and path.is_file():
                        yield path, category, day


# ---------------------------------------------------------------------------
# Process-wide queue
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Create and start the process-wide audit queue."""
    global _global_queue
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_audit_sink() -> AuditSink:
    """An AuditSink over the process-wide queue (logger-only if uninitialised)."""
    return AuditSink(_global_queue)


def shutdown_logging() -> None:
    """Flush and stop the process-wide audit queue."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
        _global_queue = None
