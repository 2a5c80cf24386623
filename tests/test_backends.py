import asyncio
import dataclasses

import numpy as np
import pytest

from backends import (
    BACKEND_IDS,
    EQUIVALENCE_EPSILON,
    AcceleratedBackend,
    DirectBackend,
    ForeignBuffer,
    NativeModule,
    create_backend,
    load_native_module,
)
from config import DEFAULT_NATIVE_MODULE_PATH, BenchmarkConfig
from conftest import make_preset, random_buffer
from errors import (
    BackendInitError,
    BackendNotReadyError,
    ForeignAllocationError,
    NativeInvocationError,
)
from metrics import compare_pixel_buffers

native = pytest.mark.native


def test_direct_backend_is_always_ready(direct_backend, catalog, sample_buffer):
    assert direct_backend.is_ready()
    assert asyncio.run(direct_backend.init()) is direct_backend
    elapsed = direct_backend.process(sample_buffer, catalog.lookup('sepia'))
    assert elapsed >= 0.0


def test_create_backend_by_id():
    cfg = BenchmarkConfig(chunk_pixels=128)
    direct = create_backend('direct', cfg)
    assert isinstance(direct, DirectBackend) and direct.chunk_pixels == 128
    accel = create_backend('accelerated', cfg)
    assert isinstance(accel, AcceleratedBackend) and not accel.is_ready()
    assert set(BACKEND_IDS) == {'direct', 'accelerated'}
    with pytest.raises(ValueError):
        create_backend('gpu', cfg)


@native
def test_load_native_module_resolves_exports():
    mod = load_native_module()
    assert isinstance(mod, NativeModule)
    assert mod.live_allocation_count() == 0


@native
def test_foreign_buffer_is_released_on_exit():
    mod = load_native_module()
    with ForeignBuffer(mod, 64) as fb:
        assert fb.ptr != 0
        assert mod.live_allocation_count() == 1
        fb.write(bytes(range(64)))
        assert bytes(fb.read()) == bytes(range(64))
    assert fb.ptr == 0
    assert mod.live_allocation_count() == 0


@native
def test_process_before_init_raises(catalog, sample_buffer):
    backend = AcceleratedBackend()
    before = sample_buffer.data.copy()
    assert not backend.is_ready()
    with pytest.raises(BackendNotReadyError):
        backend.process(sample_buffer, catalog.lookup('sepia'))
    assert np.array_equal(sample_buffer.data, before)


@native
def test_backends_agree_on_every_preset(catalog, direct_backend, accelerated_backend):
    source = random_buffer(64, 48, seed=11)
    for preset in catalog:
        a, b = source.copy(), source.copy()
        direct_backend.process(a, preset)
        accelerated_backend.process(b, preset)
        eq = compare_pixel_buffers(a, b, EQUIVALENCE_EPSILON, original=source)
        assert eq.within_epsilon, (preset.key, eq.max_abs_diff)
        assert eq.alpha_preserved, preset.key


@native
def test_accelerated_handles_extreme_parameters(direct_backend, accelerated_backend):
    source = random_buffer(20, 20, seed=2)
    for preset in (
        make_preset(brightness=25.0, contrast=4.0),
        make_preset(matrix=(-1.0, 0.5, 0, 0, -2.0, 0, 1, 1, 1), gamma=0.3),
        make_preset(saturation=-1.0, gamma=3.0),
    ):
        a, b = source.copy(), source.copy()
        direct_backend.process(a, preset)
        accelerated_backend.process(b, preset)
        assert compare_pixel_buffers(a, b, EQUIVALENCE_EPSILON).within_epsilon


@native
def test_accelerated_brightness_scenario(accelerated_backend):
    buf = random_buffer(1, 1)
    buf.data[:] = [100, 100, 100, 255]
    accelerated_backend.process(buf, make_preset(brightness=2.0))
    assert buf.data.tolist() == [200, 200, 200, 255]


@native
def test_no_allocations_outlive_a_call(catalog, accelerated_backend, sample_buffer):
    accelerated_backend.process(sample_buffer, catalog.lookup('vintage'))
    assert accelerated_backend.native.live_allocation_count() == 0


@native
def test_trap_releases_buffers(catalog, accelerated_backend, sample_buffer):
    mod = accelerated_backend.native
    real = mod.apply_preset

    def trapping(store, pixels, *rest):
        # far outside linear memory
        return real(store, 0x7FFFFFF0, *rest)

    accelerated_backend._native = dataclasses.replace(mod, apply_preset=trapping)
    before = sample_buffer.data.copy()
    with pytest.raises(NativeInvocationError):
        accelerated_backend.process(sample_buffer, catalog.lookup('sepia'))
    assert mod.live_allocation_count() == 0
    assert np.array_equal(sample_buffer.data, before)


@native
def test_allocation_failure(catalog, accelerated_backend, sample_buffer):
    mod = accelerated_backend.native
    accelerated_backend._native = dataclasses.replace(mod, alloc=lambda store, size: 0)
    with pytest.raises(ForeignAllocationError):
        accelerated_backend.process(sample_buffer, catalog.lookup('sepia'))
    assert mod.live_allocation_count() == 0


@native
def test_second_allocation_failure_releases_first(catalog, accelerated_backend, sample_buffer):
    mod = accelerated_backend.native
    calls = []

    def alloc_once(store, size):
        calls.append(size)
        return mod.alloc(store, size) if len(calls) == 1 else 0

    accelerated_backend._native = dataclasses.replace(mod, alloc=alloc_once)
    with pytest.raises(ForeignAllocationError):
        accelerated_backend.process(sample_buffer, catalog.lookup('sepia'))
    assert len(calls) == 2
    assert mod.live_allocation_count() == 0


@native
def test_non_positive_gamma_is_rejected_before_marshaling(accelerated_backend, sample_buffer):
    with pytest.raises(ValueError):
        accelerated_backend.process(sample_buffer, make_preset(gamma=0.0))
    assert accelerated_backend.native.live_allocation_count() == 0


@native
def test_empty_buffer(accelerated_backend, catalog):
    from utils import PixelBuffer
    buf = PixelBuffer(np.zeros(0, dtype=np.uint8), 0, 0)
    assert accelerated_backend.process(buf, catalog.lookup('sepia')) >= 0.0


@native
def test_init_failure_then_retry(tmp_path):
    backend = AcceleratedBackend(str(tmp_path / 'missing.wat'))
    with pytest.raises(BackendInitError):
        asyncio.run(backend.init())
    assert not backend.is_ready()
    assert backend.init_error is not None

    backend.module_path = DEFAULT_NATIVE_MODULE_PATH
    asyncio.run(backend.init())
    assert backend.is_ready()
    assert backend.init_error is None


@native
def test_missing_export_fails_init(tmp_path):
    p = tmp_path / 'partial.wat'
    p.write_text('(module (memory (export "memory") 1))', encoding='utf-8')
    with pytest.raises(BackendInitError, match='alloc'):
        load_native_module(str(p))


@native
def test_wrong_signature_fails_init(tmp_path):
    p = tmp_path / 'wrong.wat'
    p.write_text(
        '(module (memory (export "memory") 1)'
        ' (func (export "alloc") (result i32) (i32.const 0)))',
        encoding='utf-8',
    )
    with pytest.raises(BackendInitError, match='alloc'):
        load_native_module(str(p))


@native
def test_invalid_module_text_fails_init(tmp_path):
    p = tmp_path / 'broken.wat'
    p.write_text('(module (func $oops (result i32)))', encoding='utf-8')
    with pytest.raises(BackendInitError):
        load_native_module(str(p))
