"""Per-backend benchmark history with JSON persistence and CSV export.

Each backend owns one ``HistoryStore``. Entries are kept in insertion order
(oldest first); the full snapshot is rewritten on every change. When durable
storage fails the store logs it once and keeps working in memory for the
rest of the session.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import math
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from errors import EmptyHistoryError, PersistenceError

logger = logging.getLogger(__name__)

RECORD_FIELDS = ('timestamp', 'preset', 'size', 'pixelCount', 'processingTime', 'throughput')
SIZE_SEPARATOR = '×'


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_throughput(pixel_count: int, processing_time_ms: float) -> int:
    """Pixels per millisecond; 0 when the measured time is not positive."""
    if not processing_time_ms > 0:
        return 0
    return round_half_up(pixel_count / processing_time_ms)


def _format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _parse_timestamp(text: str) -> datetime:
    if not isinstance(text, str):
        raise TypeError(f'timestamp must be a string, got {type(text).__name__}')
    ts = datetime.fromisoformat(text.replace('Z', '+00:00'))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class BenchmarkEntry:
    timestamp: datetime
    preset_name: str
    width: int
    height: int
    pixel_count: int
    processing_time_ms: float
    throughput: int

    @classmethod
    def create(cls, preset_name: str, width: int, height: int, processing_time_ms: float,
               timestamp: Optional[datetime] = None) -> 'BenchmarkEntry':
        pixel_count = int(width) * int(height)
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            preset_name=preset_name,
            width=int(width),
            height=int(height),
            pixel_count=pixel_count,
            processing_time_ms=float(processing_time_ms),
            throughput=compute_throughput(pixel_count, processing_time_ms),
        )

    @property
    def size(self) -> str:
        return f'{self.width}{SIZE_SEPARATOR}{self.height}'

    def to_record(self) -> Dict[str, Any]:
        return {
            'timestamp': _format_timestamp(self.timestamp),
            'preset': self.preset_name,
            'size': self.size,
            'pixelCount': self.pixel_count,
            'processingTime': self.processing_time_ms,
            'throughput': self.throughput,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'BenchmarkEntry':
        """Inverse of ``to_record``. Raises KeyError/ValueError/TypeError on bad input."""
        width, height = (int(part) for part in str(record['size']).split(SIZE_SEPARATOR))
        return cls(
            timestamp=_parse_timestamp(record['timestamp']),
            preset_name=str(record['preset']),
            width=width,
            height=height,
            pixel_count=int(record['pixelCount']),
            processing_time_ms=float(record['processingTime']),
            throughput=int(record['throughput']),
        )


class JsonFileStorage:
    """One JSON document per key inside ``directory``; writes are atomic."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, key: str) -> str:
        return os.path.join(self.directory, f'{key}.json')

    def read(self, key: str) -> Optional[Any]:
        """Return the decoded document, or None when absent.

        Raises ValueError for unparsable content and PersistenceError for I/O failures.
        """
        path = self.path_for(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f'Cannot read {path}: {e}') from e

    def write(self, key: str, document: Any) -> None:
        path = self.path_for(key)
        tmp_path = path + '.tmp'
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise PersistenceError(f'Cannot write {path}: {e}') from e

    def remove(self, key: str) -> None:
        path = self.path_for(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f'Cannot remove {path}: {e}') from e


class HistoryStore:
    """Ordered benchmark entries for one backend."""

    def __init__(self, backend_id: str, storage: JsonFileStorage):
        self.backend_id = backend_id
        self.storage = storage
        self.persistent = True
        self._entries: List[BenchmarkEntry] = self._load()

    @property
    def storage_key(self) -> str:
        return f'benchmark-history-{self.backend_id}'

    def _degrade(self, error: PersistenceError) -> None:
        if self.persistent:
            logger.warning('History for %s is now in-memory only: %s', self.backend_id, error)
        self.persistent = False

    def _load(self) -> List[BenchmarkEntry]:
        try:
            document = self.storage.read(self.storage_key)
        except PersistenceError as e:
            self._degrade(e)
            return []
        except ValueError as e:
            logger.warning('Ignoring unreadable history for %s: %s', self.backend_id, e)
            return []
        if document is None:
            return []
        try:
            return [BenchmarkEntry.from_record(record) for record in document]
        except (KeyError, ValueError, TypeError) as e:
            logger.warning('Ignoring malformed history for %s: %s', self.backend_id, e)
            return []

    def _persist(self) -> None:
        if not self.persistent:
            return
        try:
            self.storage.write(self.storage_key, [e.to_record() for e in self._entries])
        except PersistenceError as e:
            self._degrade(e)

    @property
    def entries(self) -> List[BenchmarkEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BenchmarkEntry]:
        return iter(list(self._entries))

    def add(self, entry: BenchmarkEntry) -> None:
        self._entries.append(entry)
        self._persist()

    def clear(self) -> None:
        self._entries = []
        if not self.persistent:
            return
        try:
            self.storage.remove(self.storage_key)
        except PersistenceError as e:
            self._degrade(e)

    def reversed_entries(self) -> List[BenchmarkEntry]:
        return self._entries[::-1]

    def recent(self, n: int = 10) -> List[BenchmarkEntry]:
        return self.reversed_entries()[:max(0, n)]

    def export_csv(self) -> str:
        if not self._entries:
            raise EmptyHistoryError(f'No {self.backend_id} benchmark history to export')
        records = [e.to_record() for e in self._entries]
        out = io.StringIO()
        writer = csv.DictWriter(out, fieldnames=list(records[0].keys()), lineterminator='\n')
        writer.writeheader()
        writer.writerows(records)
        return out.getvalue()

    def suggested_filename(self, now_ms: Optional[int] = None) -> str:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return f'benchmark-{self.backend_id}-{now_ms}.csv'

    def export_csv_file(self, directory: str) -> str:
        text = self.export_csv()
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, self.suggested_filename())
        with open(path, 'w', encoding='utf-8', newline='') as f:
            f.write(text)
        logger.info('Exported %d %s entries to %s', len(self._entries), self.backend_id, path)
        return path
