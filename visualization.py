import os
from typing import Dict, List, Sequence

import matplotlib.pyplot as plt
import numpy as np

from history import BenchmarkEntry

BACKEND_COLORS = {'direct': '#1f77b4', 'accelerated': '#ff7f0e'}


def create_history_chart(histories: Dict[str, Sequence[BenchmarkEntry]]):
    """Processing time of each recorded run, oldest first, one line per backend."""
    fig, ax = plt.subplots(figsize=(8, 4))
    plotted = False
    for bid, entries in histories.items():
        if not entries:
            continue
        times = [e.processing_time_ms for e in entries]
        ax.plot(range(1, len(times) + 1), times, marker='o', markersize=3,
                label=bid, color=BACKEND_COLORS.get(bid))
        plotted = True
    if plotted:
        ax.legend()
    else:
        ax.text(0.5, 0.5, 'No history recorded', ha='center', transform=ax.transAxes)
    ax.set_xlabel('Run')
    ax.set_ylabel('Processing time (ms)')
    ax.set_title('Benchmark history')
    fig.tight_layout()
    return fig


def create_throughput_chart(summaries):
    """Mean throughput per preset, grouped by backend."""
    presets: List[str] = []
    for s in summaries:
        if s.preset_key not in presets:
            presets.append(s.preset_key)
    backends = sorted({s.backend_id for s in summaries})
    fig, ax = plt.subplots(figsize=(max(6, len(presets) * 0.9), 4))
    if not presets:
        ax.text(0.5, 0.5, 'No runs', ha='center', transform=ax.transAxes)
        return fig

    xs = np.arange(len(presets))
    width = 0.8 / max(1, len(backends))
    for i, bid in enumerate(backends):
        by_preset = {s.preset_key: s.throughput for s in summaries if s.backend_id == bid}
        vals = [by_preset.get(k, 0) for k in presets]
        ax.bar(xs + i * width, vals, width, label=bid, color=BACKEND_COLORS.get(bid))
    ax.set_xticks(xs + width * (len(backends) - 1) / 2)
    ax.set_xticklabels(presets, rotation=30, ha='right')
    ax.set_ylabel('Throughput (px/ms)')
    ax.set_title('Throughput by preset')
    ax.legend()
    fig.tight_layout()
    return fig


def create_backend_comparison_chart(summaries):
    """Mean time per preset for direct vs accelerated, with speedup annotations."""
    direct = {s.preset_key: s.stats.mean_ms for s in summaries if s.backend_id == 'direct'}
    accel = {s.preset_key: s.stats.mean_ms for s in summaries if s.backend_id == 'accelerated'}
    keys = [k for k in direct if k in accel]
    fig, ax = plt.subplots(figsize=(max(6, len(keys) * 0.9), 4))
    if not keys:
        ax.text(0.5, 0.5, 'Both backends are needed for a comparison', ha='center', transform=ax.transAxes)
        return fig

    xs = np.arange(len(keys))
    ax.bar(xs - 0.2, [direct[k] for k in keys], 0.4, label='direct', color=BACKEND_COLORS['direct'])
    ax.bar(xs + 0.2, [accel[k] for k in keys], 0.4, label='accelerated', color=BACKEND_COLORS['accelerated'])
    for x, k in zip(xs, keys):
        if accel[k] > 0:
            top = max(direct[k], accel[k])
            ax.annotate(f"{direct[k] / accel[k]:.1f}x", (x, top), ha='center', va='bottom', fontsize=8)
    ax.set_xticks(xs)
    ax.set_xticklabels(keys, rotation=30, ha='right')
    ax.set_ylabel('Mean time (ms)')
    ax.set_title('Direct vs accelerated')
    ax.legend()
    fig.tight_layout()
    return fig


def save_charts(context, summaries, output_dir: str = 'benchmark_reports') -> List[str]:
    os.makedirs(output_dir, exist_ok=True)
    figures = {
        'history.png': create_history_chart({bid: context.get_history(bid) for bid in context.histories}),
    }
    if summaries:
        figures['throughput.png'] = create_throughput_chart(summaries)
        figures['backend_comparison.png'] = create_backend_comparison_chart(summaries)

    paths = []
    for name, fig in figures.items():
        p = os.path.join(output_dir, name)
        fig.savefig(p, dpi=150)
        plt.close(fig)
        paths.append(p)
    return paths
