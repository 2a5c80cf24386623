"""Runtime configuration for the benchmark tools."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_PRESETS_PATH = os.path.join(BASE_DIR, 'presets.json')
DEFAULT_NATIVE_MODULE_PATH = os.path.join(BASE_DIR, 'native', 'filters.wat')
DEFAULT_HISTORY_DIR = 'benchmark_history'
DEFAULT_OUTPUT_DIR = 'benchmark_reports'

# Pixels per vectorised pass in the direct backend; bounds float64 temporaries.
DEFAULT_CHUNK_PIXELS = 1 << 18


@dataclass
class BenchmarkConfig:
    presets_source: str = DEFAULT_PRESETS_PATH
    history_dir: str = DEFAULT_HISTORY_DIR
    native_module_path: str = DEFAULT_NATIVE_MODULE_PATH
    output_dir: str = DEFAULT_OUTPUT_DIR
    iterations: int = 1
    chunk_pixels: int = DEFAULT_CHUNK_PIXELS
    log_level: str = 'INFO'
    request_timeout: float = 10.0

    def validate(self) -> None:
        if self.iterations < 1:
            raise ValueError(f'iterations must be >= 1, got {self.iterations}')
        if self.chunk_pixels < 1:
            raise ValueError(f'chunk_pixels must be >= 1, got {self.chunk_pixels}')
        if self.request_timeout <= 0:
            raise ValueError('request_timeout must be positive')
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f'Unknown log level: {self.log_level}')

    @classmethod
    def from_args(cls, args) -> 'BenchmarkConfig':
        """Build a config from an argparse namespace, keeping defaults for unset options."""
        cfg = cls()
        for attr, opt in (
            ('presets_source', 'presets'),
            ('history_dir', 'history_dir'),
            ('native_module_path', 'native_module'),
            ('output_dir', 'output_dir'),
            ('iterations', 'iterations'),
            ('log_level', 'log_level'),
        ):
            value: Optional[object] = getattr(args, opt, None)
            if value is not None:
                setattr(cfg, attr, value)
        cfg.validate()
        return cfg


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
    )
