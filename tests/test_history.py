import csv
import io
import json
import os
from datetime import datetime, timezone

import pytest

from errors import EmptyHistoryError, PersistenceError
from history import (
    RECORD_FIELDS,
    BenchmarkEntry,
    HistoryStore,
    JsonFileStorage,
    compute_throughput,
    round_half_up,
)

TS = datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)


def _entry(name='Vintage', w=800, h=600, ms=12.5, ts=TS):
    return BenchmarkEntry.create(name, w, h, ms, timestamp=ts)


class FailingStorage(JsonFileStorage):
    """Reads nothing and fails every write."""

    def __init__(self):
        super().__init__('/nonexistent')
        self.writes = 0

    def read(self, key):
        return None

    def write(self, key, document):
        self.writes += 1
        raise PersistenceError('disk full')

    def remove(self, key):
        raise PersistenceError('read-only')


def test_entry_derived_fields():
    e = _entry(w=800, h=600, ms=12.5)
    assert e.pixel_count == 480000
    assert e.throughput == 38400
    assert e.size == '800×600'


def test_throughput_rounds_half_up_and_guards_zero():
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2
    assert compute_throughput(5, 2.0) == 3
    assert compute_throughput(100, 0.0) == 0
    assert compute_throughput(100, -1.0) == 0


def test_record_shape_and_round_trip():
    e = _entry()
    record = e.to_record()
    assert tuple(record) == RECORD_FIELDS
    assert record['timestamp'] == '2024-05-01T12:30:15.250Z'
    assert record['preset'] == 'Vintage'
    assert record['size'] == '800×600'
    assert record['processingTime'] == 12.5
    assert BenchmarkEntry.from_record(record) == e


def test_add_persists_snapshot(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    store = HistoryStore('direct', storage)
    store.add(_entry(name='A'))
    store.add(_entry(name='B'))

    path = tmp_path / 'benchmark-history-direct.json'
    assert path.exists()
    saved = json.loads(path.read_text(encoding='utf-8'))
    assert [r['preset'] for r in saved] == ['A', 'B']

    reloaded = HistoryStore('direct', JsonFileStorage(str(tmp_path)))
    assert reloaded.entries == store.entries
    assert reloaded.persistent


def test_histories_are_separate_per_backend(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    HistoryStore('direct', storage).add(_entry(name='D'))
    accel = HistoryStore('accelerated', storage)
    assert len(accel) == 0
    assert os.path.exists(storage.path_for('benchmark-history-direct'))
    assert not os.path.exists(storage.path_for('benchmark-history-accelerated'))


def test_clear_removes_snapshot(tmp_path):
    storage = JsonFileStorage(str(tmp_path))
    store = HistoryStore('direct', storage)
    store.add(_entry())
    store.clear()
    assert len(store) == 0
    assert not (tmp_path / 'benchmark-history-direct.json').exists()
    assert len(HistoryStore('direct', storage)) == 0
    # clearing an empty history is fine
    store.clear()


BAD_TIMESTAMP = ('[{"timestamp": %s, "preset": "Vintage", "size": "8×6", '
                 '"pixelCount": 48, "processingTime": 1.5, "throughput": 32}]')


@pytest.mark.parametrize('content', [
    '{not json',
    '{"a": 1}',
    '[{"preset": "x"}]',
    '[1, 2]',
    BAD_TIMESTAMP % 'null',
    BAD_TIMESTAMP % '1714566615250',
])
def test_unreadable_snapshot_loads_empty(tmp_path, content):
    (tmp_path / 'benchmark-history-direct.json').write_text(content, encoding='utf-8')
    store = HistoryStore('direct', JsonFileStorage(str(tmp_path)))
    assert len(store) == 0
    assert store.persistent


def test_write_failure_degrades_to_memory(caplog):
    storage = FailingStorage()
    store = HistoryStore('accelerated', storage)
    with caplog.at_level('WARNING'):
        store.add(_entry(name='A'))
    assert not store.persistent
    assert [e.preset_name for e in store] == ['A']
    assert 'in-memory only' in caplog.text

    store.add(_entry(name='B'))
    store.clear()
    # no further attempts once degraded
    assert storage.writes == 1
    assert len(store) == 0


def test_storage_wraps_os_errors(tmp_path):
    blocker = tmp_path / 'file'
    blocker.write_text('x', encoding='utf-8')
    storage = JsonFileStorage(str(blocker / 'sub'))
    with pytest.raises(PersistenceError):
        storage.write('k', [])


def test_recent_is_newest_first():
    store = HistoryStore('direct', FailingStorage())
    for i in range(5):
        store.add(_entry(name=f'P{i}'))
    assert [e.preset_name for e in store.recent(3)] == ['P4', 'P3', 'P2']
    assert [e.preset_name for e in store.reversed_entries()] == ['P4', 'P3', 'P2', 'P1', 'P0']
    assert store.recent(0) == []


def test_export_csv_header_and_order(tmp_path):
    store = HistoryStore('direct', JsonFileStorage(str(tmp_path)))
    store.add(_entry(name='First', ms=10.0))
    store.add(_entry(name='Second', ms=20.0))
    text = store.export_csv()
    lines = text.splitlines()
    assert lines[0] == ','.join(RECORD_FIELDS)
    assert lines[1].split(',')[1] == 'First'
    assert lines[2].split(',')[1] == 'Second'
    rows = list(csv.DictReader(io.StringIO(text)))
    assert rows[0]['size'] == '800×600'
    assert float(rows[1]['processingTime']) == 20.0


def test_export_csv_quotes_fields_with_commas(tmp_path):
    store = HistoryStore('direct', JsonFileStorage(str(tmp_path)))
    store.add(_entry(name='1,2'))
    row = store.export_csv().splitlines()[1]
    assert '"1,2"' in row
    parsed = next(csv.DictReader(io.StringIO(store.export_csv())))
    assert parsed['preset'] == '1,2'


def test_export_empty_history_raises(tmp_path):
    store = HistoryStore('accelerated', JsonFileStorage(str(tmp_path)))
    with pytest.raises(EmptyHistoryError):
        store.export_csv()
    with pytest.raises(EmptyHistoryError):
        store.export_csv_file(str(tmp_path / 'out'))
    assert not (tmp_path / 'out').exists()


def test_export_csv_file(tmp_path):
    store = HistoryStore('accelerated', JsonFileStorage(str(tmp_path)))
    store.add(_entry())
    path = store.export_csv_file(str(tmp_path / 'exports'))
    name = os.path.basename(path)
    assert name.startswith('benchmark-accelerated-') and name.endswith('.csv')
    with open(path, encoding='utf-8', newline='') as f:
        assert f.read() == store.export_csv()
    assert store.suggested_filename(now_ms=1700000000000) == 'benchmark-accelerated-1700000000000.csv'


class UnreadableStorage(JsonFileStorage):
    def __init__(self):
        super().__init__('/nonexistent')
        self.writes = 0

    def read(self, key):
        raise PersistenceError('permission denied')

    def write(self, key, document):
        self.writes += 1


def test_read_failure_loads_empty_in_memory(caplog):
    storage = UnreadableStorage()
    with caplog.at_level('WARNING'):
        store = HistoryStore('direct', storage)
    assert len(store) == 0
    assert not store.persistent
    assert 'in-memory only' in caplog.text

    store.add(_entry())
    assert len(store) == 1
    assert storage.writes == 0


def test_failed_write_leaves_no_temp_file(tmp_path, monkeypatch):
    storage = JsonFileStorage(str(tmp_path))

    def broken_fsync(fd):
        raise OSError('disk full')

    monkeypatch.setattr(os, 'fsync', broken_fsync)
    with pytest.raises(PersistenceError):
        storage.write('k', [1])
    assert os.listdir(tmp_path) == []
