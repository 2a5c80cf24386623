import asyncio

import numpy as np
import pytest

from backends import AcceleratedBackend, DirectBackend
from benchmark import BenchmarkContext
from config import BenchmarkConfig
from presets import Preset, PresetCatalog
from utils import PixelBuffer


def make_preset(key='custom', **overrides):
    values = dict(
        name=key.title(),
        description='test preset',
        matrix=(1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0),
        saturation=1.0,
        contrast=1.0,
        brightness=1.0,
        gamma=1.0,
    )
    values.update(overrides)
    return Preset(key=key, **values)


def random_buffer(width, height, seed=0):
    rng = np.random.RandomState(seed)
    data = rng.randint(0, 256, size=width * height * 4).astype(np.uint8)
    return PixelBuffer(data, width, height)


@pytest.fixture
def catalog():
    return PresetCatalog.load()


@pytest.fixture
def sample_buffer():
    # odd dimensions so chunked processing does not line up with the image
    return random_buffer(37, 23, seed=7)


@pytest.fixture
def direct_backend():
    return DirectBackend()


@pytest.fixture
def accelerated_backend():
    return asyncio.run(AcceleratedBackend().init())


@pytest.fixture
def bench_config(tmp_path):
    return BenchmarkConfig(
        history_dir=str(tmp_path / 'history'),
        output_dir=str(tmp_path / 'reports'),
    )


@pytest.fixture
def context(bench_config):
    return asyncio.run(BenchmarkContext.create(bench_config))
