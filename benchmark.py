"""Benchmarking for the RGBA filter pipeline.

This module times presets on the direct and accelerated backends, records
every run into the per-backend history, produces JSON/CSV/Markdown reports
and exposes a small CLI. All shared state lives in ``BenchmarkContext``,
which the CLI builds once and passes around.
"""
from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import os
import platform
import sys
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import psutil
import wasmtime

from backends import ACCELERATED, BACKEND_IDS, DIRECT, EQUIVALENCE_EPSILON, ComputeBackend, create_backend
from config import BenchmarkConfig, configure_logging
from errors import BackendInitError, EmptyHistoryError, FilterBenchError
from history import BenchmarkEntry, HistoryStore, JsonFileStorage, compute_throughput
from metrics import EquivalenceResult, TimingStats, compare_pixel_buffers, timing_statistics
from presets import Preset, PresetCatalog
from utils import PixelBuffer, create_synthetic_test_image, load_rgba_image, save_rgba_image

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    elapsed_ms: float
    buffer: PixelBuffer
    entry: BenchmarkEntry


@dataclass
class IterationSummary:
    preset_key: str
    preset_name: str
    backend_id: str
    width: int
    height: int
    iterations: int
    stats: TimingStats
    throughput: int
    peak_memory_mb: Optional[float] = None
    average_memory_mb: Optional[float] = None
    times_ms: List[float] = field(default_factory=list)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


@dataclass
class BackendComparison:
    preset_key: str
    elapsed_ms: Dict[str, float]
    equivalence: EquivalenceResult

    @property
    def speedup(self) -> Optional[float]:
        direct = self.elapsed_ms.get(DIRECT)
        accel = self.elapsed_ms.get(ACCELERATED)
        if not direct or not accel:
            return None
        return direct / accel


class MemorySampler:
    """Samples the process RSS with psutil while a workload runs."""

    def __init__(self, interval: float = 0.01):
        self.interval = interval
        self._stop = threading.Event()
        self._samples: List[int] = []
        self._thread: Optional[threading.Thread] = None
        self._proc = psutil.Process()

    def _run(self):
        while not self._stop.is_set():
            try:
                self._samples.append(self._proc.memory_info().rss)
            except psutil.Error:
                break
            time.sleep(self.interval)

    def __enter__(self):
        self._samples.append(self._proc.memory_info().rss)
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)

    def get_stats(self) -> Tuple[Optional[float], Optional[float]]:
        if not self._samples:
            return None, None
        peak = max(self._samples) / (1024.0 * 1024.0)
        avg = sum(self._samples) / len(self._samples) / (1024.0 * 1024.0)
        return peak, avg


class BenchmarkRecorder:
    """Times one backend run and appends the result to that backend's history.

    The measurement covers everything ``backend.process`` does, marshaling
    included. A failing run propagates its error and records nothing.
    """

    def __init__(self, histories: Dict[str, HistoryStore], clock: Callable[[], float] = time.perf_counter):
        self.histories = histories
        self.clock = clock

    def run(self, backend: ComputeBackend, buffer: PixelBuffer, preset: Preset) -> BenchmarkEntry:
        t0 = self.clock()
        backend.process(buffer, preset)
        elapsed_ms = (self.clock() - t0) * 1000.0
        entry = BenchmarkEntry.create(preset.name, buffer.width, buffer.height, elapsed_ms)
        self.histories[backend.backend_id].add(entry)
        logger.debug('%s on %s: %.3f ms (%d px/ms)', preset.key, backend.backend_id, elapsed_ms, entry.throughput)
        return entry


class BenchmarkContext:
    """Catalog, backends, histories and recorder for one session."""

    def __init__(self, config: BenchmarkConfig, catalog: PresetCatalog,
                 backends: Dict[str, ComputeBackend], histories: Dict[str, HistoryStore]):
        self.config = config
        self.catalog = catalog
        self.backends = backends
        self.histories = histories
        self.recorder = BenchmarkRecorder(histories)

    @classmethod
    async def create(cls, config: Optional[BenchmarkConfig] = None,
                     backend_ids: Sequence[str] = BACKEND_IDS) -> 'BenchmarkContext':
        """Load presets and history, then initialise every backend.

        Raises ConfigLoadError when the catalog cannot be loaded. A backend that
        fails to initialise is logged and left unusable until ``retry_init``.
        """
        config = config or BenchmarkConfig()
        catalog = await PresetCatalog.load_async(config.presets_source, config.request_timeout)
        storage = JsonFileStorage(config.history_dir)
        histories = {bid: HistoryStore(bid, storage) for bid in backend_ids}
        backends = {bid: create_backend(bid, config) for bid in backend_ids}
        for bid, backend in backends.items():
            try:
                await backend.init()
            except BackendInitError as e:
                logger.warning('Backend %s unavailable: %s', bid, e)
        return cls(config, catalog, backends, histories)

    def backend(self, backend_id: str) -> ComputeBackend:
        try:
            return self.backends[backend_id]
        except KeyError:
            raise ValueError(f'Unknown backend: {backend_id!r}') from None

    def history(self, backend_id: str) -> HistoryStore:
        try:
            return self.histories[backend_id]
        except KeyError:
            raise ValueError(f'Unknown backend: {backend_id!r}') from None

    def ready_backends(self) -> List[str]:
        return [bid for bid, b in self.backends.items() if b.is_ready()]

    async def retry_init(self, backend_id: str = ACCELERATED) -> ComputeBackend:
        return await self.backend(backend_id).init()

    def list_presets(self) -> List[Dict[str, str]]:
        return self.catalog.describe()

    def apply_preset(self, buffer: PixelBuffer, preset_key: str, backend_id: str = DIRECT) -> ApplyResult:
        preset = self.catalog.lookup(preset_key)
        entry = self.recorder.run(self.backend(backend_id), buffer, preset)
        return ApplyResult(entry.processing_time_ms, buffer, entry)

    def get_history(self, backend_id: str) -> List[BenchmarkEntry]:
        return self.history(backend_id).entries

    def clear_history(self, backend_id: str) -> None:
        self.history(backend_id).clear()

    def export_history(self, backend_id: str) -> str:
        return self.history(backend_id).export_csv()

    def export_history_file(self, backend_id: str, directory: Optional[str] = None) -> str:
        return self.history(backend_id).export_csv_file(directory or self.config.output_dir)

    def compare_backends(self, buffer: PixelBuffer, preset_key: str, record: bool = True) -> BackendComparison:
        """Run ``preset_key`` on copies of ``buffer`` with both backends and compare outputs."""
        preset = self.catalog.lookup(preset_key)
        outputs: Dict[str, PixelBuffer] = {}
        elapsed: Dict[str, float] = {}
        for bid in (DIRECT, ACCELERATED):
            backend = self.backend(bid)
            work = buffer.copy()
            if record:
                elapsed[bid] = self.recorder.run(backend, work, preset).processing_time_ms
            else:
                elapsed[bid] = backend.process(work, preset)
            outputs[bid] = work
        eq = compare_pixel_buffers(outputs[DIRECT], outputs[ACCELERATED], EQUIVALENCE_EPSILON, original=buffer)
        return BackendComparison(preset_key, elapsed, eq)


def run_iterations(context: BenchmarkContext, buffer: PixelBuffer, preset_key: str,
                   backend_id: str = DIRECT, iterations: int = 1,
                   sample_memory: bool = True) -> IterationSummary:
    """Apply a preset ``iterations`` times, each on a fresh copy of ``buffer``."""
    if iterations < 1:
        raise ValueError('iterations must be >= 1')
    preset = context.catalog.lookup(preset_key)
    times: List[float] = []
    peak = avg = None

    def _work():
        for _ in range(iterations):
            times.append(context.apply_preset(buffer.copy(), preset_key, backend_id).elapsed_ms)

    if sample_memory:
        with MemorySampler() as sampler:
            _work()
        peak, avg = sampler.get_stats()
    else:
        _work()

    stats = timing_statistics(times)
    return IterationSummary(
        preset_key=preset_key,
        preset_name=preset.name,
        backend_id=backend_id,
        width=buffer.width,
        height=buffer.height,
        iterations=iterations,
        stats=stats,
        throughput=compute_throughput(buffer.pixel_count, stats.mean_ms),
        peak_memory_mb=peak,
        average_memory_mb=avg,
        times_ms=times,
    )


def benchmark_all_presets(context: BenchmarkContext, buffer: PixelBuffer,
                          backend_ids: Iterable[str] = BACKEND_IDS,
                          iterations: int = 1) -> List[IterationSummary]:
    summaries: List[IterationSummary] = []
    for bid in backend_ids:
        if not context.backend(bid).is_ready():
            logger.warning('Skipping backend %s: not initialised', bid)
            continue
        for key in context.catalog.names():
            summary = run_iterations(context, buffer, key, bid, iterations)
            logger.info('%-12s %-11s mean %s  %s', key, bid,
                        format_time(summary.stats.mean_ms), format_throughput(summary.throughput))
            summaries.append(summary)
    return summaries


def get_system_info() -> Dict[str, Any]:
    info = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'numpy_version': np.__version__,
        'wasmtime_version': getattr(wasmtime, '__version__', None),
        'cpu_count': psutil.cpu_count(logical=True),
        'total_ram_bytes': psutil.virtual_memory().total,
    }
    return info


def generate_benchmark_report(summaries: List[IterationSummary], output_dir: str = 'benchmark_reports',
                              report_name: str = 'benchmark',
                              comparisons: Optional[List[BackendComparison]] = None) -> Dict[str, str]:
    os.makedirs(output_dir, exist_ok=True)
    ts = int(time.time())
    base = f"{report_name}_{ts}"
    json_path = os.path.join(output_dir, base + '.json')
    csv_path = os.path.join(output_dir, base + '.csv')
    md_path = os.path.join(output_dir, base + '.md')

    with open(json_path, 'w', encoding='utf-8') as f:
        payload = {
            'summaries': [asdict(s) for s in summaries],
            'comparisons': [
                {'preset_key': c.preset_key, 'elapsed_ms': c.elapsed_ms,
                 'speedup': c.speedup, 'equivalence': asdict(c.equivalence)}
                for c in (comparisons or [])
            ],
            'system_info': get_system_info(),
            'timestamp': ts,
        }
        json.dump(payload, f, indent=2)

    with open(csv_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(['preset', 'backend', 'width', 'height', 'iterations', 'mean_ms', 'median_ms',
                         'min_ms', 'max_ms', 'throughput_px_per_ms', 'peak_memory_mb'])
        for s in summaries:
            writer.writerow([s.preset_key, s.backend_id, s.width, s.height, s.iterations, s.stats.mean_ms,
                             s.stats.median_ms, s.stats.min_ms, s.stats.max_ms, s.throughput, s.peak_memory_mb])

    with open(md_path, 'w', encoding='utf-8') as f:
        f.write(f"# Benchmark Report: {report_name}\n\n")
        f.write(f"Runs: {len(summaries)}\n\n")
        f.write("| preset | backend | size | mean | median | throughput |\n")
        f.write("|---|---|---:|---:|---:|---:|\n")
        for s in summaries:
            f.write(f"| {s.preset_key} | {s.backend_id} | {s.width}x{s.height} | {format_time(s.stats.mean_ms)} "
                    f"| {format_time(s.stats.median_ms)} | {format_throughput(s.throughput)} |\n")
        if comparisons:
            f.write("\n## Backend comparison\n\n")
            f.write("| preset | speedup | max diff | alpha preserved |\n")
            f.write("|---|---:|---:|---|\n")
            for c in comparisons:
                speedup = f"{c.speedup:.2f}x" if c.speedup else 'N/A'
                f.write(f"| {c.preset_key} | {speedup} | {c.equivalence.max_abs_diff} | {c.equivalence.alpha_preserved} |\n")

    return {'json': json_path, 'csv': csv_path, 'md': md_path}


def format_bytes(b: Optional[float]) -> str:
    if b is None:
        return 'N/A'
    for unit in ['B', 'KB', 'MB', 'GB']:
        if abs(b) < 1024.0:
            return f"{b:3.1f} {unit}"
        b /= 1024.0
    return f"{b:.1f} TB"


def format_time(ms: Optional[float]) -> str:
    if ms is None:
        return 'N/A'
    if ms < 1000.0:
        return f"{ms:.2f} ms"
    return f"{ms / 1000.0:.3f} s"


def format_throughput(pixels_per_ms: Optional[int]) -> str:
    if pixels_per_ms is None:
        return 'N/A'
    return f"{pixels_per_ms:,} px/ms"


def parse_size(text: str) -> Tuple[int, int]:
    """Parse ``WxH`` (or ``W×H``) into a positive (width, height) pair."""
    parts = text.lower().replace('×', 'x').split('x')
    try:
        w, h = (int(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f'expected WIDTHxHEIGHT, got {text!r}') from None
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError('width and height must be positive')
    return w, h


def load_input_buffer(args) -> PixelBuffer:
    if args.image:
        return load_rgba_image(args.image)
    w, h = args.synthetic or (1024, 768)
    return create_synthetic_test_image(w, h, complexity='complex')


def _print_history(context: BenchmarkContext, backend_ids: Sequence[str], limit: int = 10) -> None:
    for bid in backend_ids:
        store = context.history(bid)
        print(f"{bid} history ({len(store)} entries{'' if store.persistent else ', in-memory only'}):")
        for e in store.recent(limit):
            print(f"  {e.timestamp:%Y-%m-%d %H:%M:%S}  {e.preset_name:<12} {e.size:>11}  "
                  f"{format_time(e.processing_time_ms):>10}  {format_throughput(e.throughput)}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description='Benchmark RGBA filter presets on the direct and accelerated backends')
    src = p.add_mutually_exclusive_group()
    src.add_argument('--image', help='Input image path (converted to RGBA)')
    src.add_argument('--synthetic', type=parse_size, metavar='WxH', help='Use a generated test image of this size')
    p.add_argument('--preset', default='vintage', help='Preset key to run')
    p.add_argument('--all-presets', action='store_true', help='Run every preset in the catalog')
    p.add_argument('--backend', choices=[DIRECT, ACCELERATED, 'both'], default='both')
    p.add_argument('--iterations', type=int)
    p.add_argument('--history', action='store_true', help='Show recent history and exit')
    p.add_argument('--export', action='store_true', help='Export history as CSV and exit')
    p.add_argument('--clear', action='store_true', help='Clear history and exit')
    p.add_argument('--compare', action='store_true', help='Compare backend outputs and timings')
    p.add_argument('--list-presets', action='store_true')
    p.add_argument('--output-dir')
    p.add_argument('--presets', help='Preset JSON file or http(s) URL')
    p.add_argument('--history-dir')
    p.add_argument('--native-module', help='Path to the WebAssembly text module')
    p.add_argument('--log-level', default='INFO')
    p.add_argument('--save-output', help='Write the filtered image of the last run to this path')
    p.add_argument('--charts', action='store_true', help='Save matplotlib charts into the output directory')
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = BenchmarkConfig.from_args(args)
    except ValueError as e:
        p.error(str(e))

    backend_ids = list(BACKEND_IDS) if args.backend == 'both' else [args.backend]
    try:
        context = asyncio.run(BenchmarkContext.create(config, backend_ids))
    except FilterBenchError as e:
        logger.error('%s', e)
        return 1

    if args.list_presets:
        for p_info in context.list_presets():
            print(f"{p_info['key']:<12} {p_info['name']:<12} {p_info['description']}")
        return 0

    if args.clear:
        for bid in backend_ids:
            context.clear_history(bid)
            print(f'Cleared {bid} history')
        return 0

    if args.history:
        _print_history(context, backend_ids)
        return 0

    if args.export:
        status = 0
        for bid in backend_ids:
            try:
                print('Wrote', context.export_history_file(bid))
            except EmptyHistoryError as e:
                logger.warning('%s', e)
                status = 1
        return status

    try:
        buffer = load_input_buffer(args)
    except (OSError, ValueError) as e:
        logger.error('Cannot load input image: %s', e)
        return 1

    runnable = [bid for bid in backend_ids if context.backend(bid).is_ready()]
    if not runnable:
        logger.error('No requested backend is initialised: %s', ', '.join(backend_ids))
        return 1

    keys = context.catalog.names() if args.all_presets else [args.preset]
    try:
        comparisons: List[BackendComparison] = []
        if args.compare:
            if set(context.ready_backends()) != {DIRECT, ACCELERATED}:
                logger.error('--compare needs both backends initialised')
                return 1
            for key in keys:
                c = context.compare_backends(buffer, key)
                comparisons.append(c)
                speedup = f"{c.speedup:.2f}x" if c.speedup else 'N/A'
                print(f"{key:<12} direct {format_time(c.elapsed_ms[DIRECT]):>10}  "
                      f"accelerated {format_time(c.elapsed_ms[ACCELERATED]):>10}  speedup {speedup}  "
                      f"max diff {c.equivalence.max_abs_diff}")
        summaries: List[IterationSummary] = []
        for bid in backend_ids:
            if bid not in runnable:
                logger.warning('Skipping backend %s: not initialised', bid)
                continue
            for key in keys:
                s = run_iterations(context, buffer, key, bid, config.iterations)
                summaries.append(s)
                print(f"{key:<12} {bid:<11} {s.width}x{s.height}  mean {format_time(s.stats.mean_ms)}  "
                      f"min {format_time(s.stats.min_ms)}  {format_throughput(s.throughput)}  "
                      f"peak RSS {format_bytes((s.peak_memory_mb or 0) * 1024 * 1024)}")
    except FilterBenchError as e:
        logger.error('%s', e)
        return 1

    if args.save_output and summaries:
        last = summaries[-1]
        out = buffer.copy()
        context.backend(last.backend_id).process(out, context.catalog.lookup(last.preset_key))
        save_rgba_image(out, args.save_output)
        print('Saved filtered image to', args.save_output)

    if summaries and (args.all_presets or config.iterations > 1 or args.compare):
        paths = generate_benchmark_report(summaries, output_dir=config.output_dir, comparisons=comparisons)
        print('Reports generated:', paths)

    if args.charts:
        from visualization import save_charts
        print('Charts:', save_charts(context, summaries, output_dir=config.output_dir))
    return 0


if __name__ == '__main__':
    sys.exit(main())
