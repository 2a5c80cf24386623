"""Cross-backend validation: every preset must give the same image on both backends."""
import argparse
import asyncio
import csv
import json
import logging
import os
import time
from dataclasses import asdict
from typing import Dict, List, Optional

from backends import ACCELERATED, DIRECT, EQUIVALENCE_EPSILON, ComputeBackend, create_backend
from config import BenchmarkConfig, configure_logging
from errors import FilterBenchError
from metrics import compare_pixel_buffers
from presets import Preset, PresetCatalog
from utils import PixelBuffer, create_synthetic_test_image, load_rgba_image

logger = logging.getLogger(__name__)


def validate_single_preset(preset: Preset, buffer: PixelBuffer, reference: ComputeBackend,
                           candidate: ComputeBackend, epsilon: int = EQUIVALENCE_EPSILON) -> Dict:
    result = {
        'preset': preset.key,
        'status': 'failed',
        'metrics': None,
        'reference_ms': None,
        'candidate_ms': None,
        'error_message': None,
    }
    try:
        expected = buffer.copy()
        actual = buffer.copy()
        result['reference_ms'] = reference.process(expected, preset)
        result['candidate_ms'] = candidate.process(actual, preset)
        eq = compare_pixel_buffers(expected, actual, epsilon, original=buffer)
        result['metrics'] = asdict(eq)
        result['status'] = 'success' if eq.within_epsilon and eq.alpha_preserved else 'mismatch'
    except FilterBenchError as e:
        result['error_message'] = str(e)
    return result


def validate_backend_equivalence(catalog: PresetCatalog, buffer: PixelBuffer,
                                 backends: Dict[str, ComputeBackend],
                                 epsilon: int = EQUIVALENCE_EPSILON) -> List[Dict]:
    """Run every preset through the direct and accelerated backends and compare."""
    reference = backends[DIRECT]
    candidate = backends[ACCELERATED]
    results = []
    total = len(catalog)
    for idx, preset in enumerate(catalog, start=1):
        logger.info('Validating %d/%d: %s', idx, total, preset.key)
        results.append(validate_single_preset(preset, buffer, reference, candidate, epsilon))
    return results


def generate_validation_report(results: List[Dict], output_dir: str = "validation_reports") -> Dict:
    os.makedirs(output_dir, exist_ok=True)
    timestamp = int(time.time())
    json_path = os.path.join(output_dir, 'validation_report.json')
    csv_path = os.path.join(output_dir, 'validation_report.csv')
    md_path = os.path.join(output_dir, 'validation_report.md')

    with open(json_path, 'w', encoding='utf-8') as f:
        json.dump({'results': results, 'generated_at': timestamp}, f, indent=2)

    fieldnames = ['preset', 'status', 'max_abs_diff', 'mean_abs_diff', 'mismatched_channels',
                  'alpha_preserved', 'reference_ms', 'candidate_ms']
    with open(csv_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for r in results:
            m = r.get('metrics') or {}
            writer.writerow({
                'preset': r.get('preset'),
                'status': r.get('status'),
                'max_abs_diff': m.get('max_abs_diff'),
                'mean_abs_diff': m.get('mean_abs_diff'),
                'mismatched_channels': m.get('mismatched_channels'),
                'alpha_preserved': m.get('alpha_preserved'),
                'reference_ms': r.get('reference_ms'),
                'candidate_ms': r.get('candidate_ms'),
            })

    total = len(results)
    successes = sum(1 for r in results if r.get('status') == 'success')
    with open(md_path, 'w', encoding='utf-8') as f:
        f.write("# Backend Validation Report\n\n")
        f.write(f"Total presets: {total}\n\n")
        f.write(f"Equivalent: {successes}\n\n")
        f.write(f"Failures: {total - successes}\n\n")
        f.write("## Detailed Results\n\n")
        f.write("| preset | status | max diff | mismatched channels | alpha preserved |\n")
        f.write("|---|---|---:|---:|---|\n")
        for r in results:
            m = r.get('metrics') or {}
            f.write(f"| {r.get('preset')} | {r.get('status')} | {m.get('max_abs_diff')} "
                    f"| {m.get('mismatched_channels')} | {m.get('alpha_preserved')} |\n")

    return {'json': json_path, 'csv': csv_path, 'md': md_path}


async def _ready_backends(config: BenchmarkConfig) -> Dict[str, ComputeBackend]:
    backends = {bid: create_backend(bid, config) for bid in (DIRECT, ACCELERATED)}
    for backend in backends.values():
        await backend.init()
    return backends


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Check that both backends produce equivalent output for every preset')
    parser.add_argument('--image', help='Input image (defaults to a generated test image)')
    parser.add_argument('--presets', help='Preset JSON file or URL')
    parser.add_argument('--native-module')
    parser.add_argument('--output-dir', default='validation_reports')
    parser.add_argument('--log-level', default='INFO')
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    config = BenchmarkConfig.from_args(args)
    try:
        catalog = PresetCatalog.load(config.presets_source, config.request_timeout)
        backends = asyncio.run(_ready_backends(config))
    except FilterBenchError as e:
        logger.error('%s', e)
        return 1

    buffer = load_rgba_image(args.image) if args.image else create_synthetic_test_image(640, 480, 'complex')
    results = validate_backend_equivalence(catalog, buffer, backends)
    paths = generate_validation_report(results, output_dir=args.output_dir)
    print('Reports generated:', paths)
    return 0 if all(r['status'] == 'success' for r in results) else 1


if __name__ == '__main__':
    raise SystemExit(main())
