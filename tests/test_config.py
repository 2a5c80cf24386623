import argparse

import pytest

from config import DEFAULT_NATIVE_MODULE_PATH, DEFAULT_PRESETS_PATH, BenchmarkConfig


def test_defaults_point_at_shipped_files():
    cfg = BenchmarkConfig()
    assert cfg.presets_source == DEFAULT_PRESETS_PATH
    assert cfg.native_module_path == DEFAULT_NATIVE_MODULE_PATH
    assert cfg.iterations == 1
    cfg.validate()


def test_from_args_overrides_only_given_options():
    ns = argparse.Namespace(presets='custom.json', history_dir=None, native_module=None,
                            output_dir='out', iterations=5, log_level='debug')
    cfg = BenchmarkConfig.from_args(ns)
    assert cfg.presets_source == 'custom.json'
    assert cfg.output_dir == 'out'
    assert cfg.iterations == 5
    assert cfg.history_dir == BenchmarkConfig().history_dir


@pytest.mark.parametrize('field,value', [
    ('iterations', 0),
    ('chunk_pixels', 0),
    ('request_timeout', 0),
    ('log_level', 'LOUD'),
])
def test_validate_rejects_bad_values(field, value):
    cfg = BenchmarkConfig(**{field: value})
    with pytest.raises(ValueError):
        cfg.validate()
