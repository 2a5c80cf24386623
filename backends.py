"""Compute backends: one processing contract, two implementations.

``DirectBackend`` runs the numpy pipeline on the caller's memory.
``AcceleratedBackend`` runs ``native/filters.wat`` compiled to machine code by
wasmtime. The kernel lives in its own linear memory, so every call marshals
the pixels and the matrix into foreign buffers and copies the result back.

Both produce channel values within ``EQUIVALENCE_EPSILON`` of each other:
the native kernel receives the matrix as f32 and computes pow with its own
exp/ln, so results can differ by one step at exact .5 rounding boundaries.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
import wasmtime

from config import DEFAULT_CHUNK_PIXELS, DEFAULT_NATIVE_MODULE_PATH, BenchmarkConfig
from errors import (
    BackendInitError,
    BackendNotReadyError,
    ForeignAllocationError,
    NativeInvocationError,
)
from filters import apply_to_pixels
from presets import Preset
from utils import PixelBuffer, as_pixel_view

logger = logging.getLogger(__name__)

DIRECT = 'direct'
ACCELERATED = 'accelerated'
BACKEND_IDS = (DIRECT, ACCELERATED)

EQUIVALENCE_EPSILON = 1
MATRIX_BYTES = 9 * 4

# export name -> (extern type, parameter count for functions)
REQUIRED_EXPORTS = {
    'memory': (wasmtime.Memory, None),
    'alloc': (wasmtime.Func, 1),
    'dealloc': (wasmtime.Func, 1),
    'live_allocations': (wasmtime.Func, 0),
    'apply_preset': (wasmtime.Func, 8),
}


def _check_gamma(preset: Preset) -> None:
    if preset.gamma <= 0:
        raise ValueError(f'gamma must be > 0, got {preset.gamma}')


class ComputeBackend(ABC):
    """Processing contract shared by all backends."""

    backend_id: str = ''
    label: str = ''

    async def init(self) -> 'ComputeBackend':
        return self

    @abstractmethod
    def is_ready(self) -> bool:
        ...

    @abstractmethod
    def process(self, buffer: PixelBuffer, preset: Preset) -> float:
        """Filter ``buffer`` in place and return the elapsed milliseconds."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(ready={self.is_ready()})"


class DirectBackend(ComputeBackend):
    backend_id = DIRECT
    label = 'Direct (numpy)'

    def __init__(self, chunk_pixels: int = DEFAULT_CHUNK_PIXELS):
        self.chunk_pixels = chunk_pixels

    def is_ready(self) -> bool:
        return True

    def process(self, buffer: PixelBuffer, preset: Preset) -> float:
        t0 = time.perf_counter()
        apply_to_pixels(as_pixel_view(buffer), preset, self.chunk_pixels)
        return (time.perf_counter() - t0) * 1000.0


@dataclass(frozen=True)
class NativeModule:
    """Linked native module: the store, its memory and the exported routines.

    Routines are called as ``routine(store, *args)``.
    """
    store: wasmtime.Store
    memory: wasmtime.Memory
    alloc: Callable[..., Any]
    dealloc: Callable[..., Any]
    live_allocations: Callable[..., Any]
    apply_preset: Callable[..., Any]

    def live_allocation_count(self) -> int:
        return int(self.live_allocations(self.store))


def compile_native_module(path: str, engine: wasmtime.Engine) -> wasmtime.Module:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            source = f.read()
    except OSError as e:
        raise BackendInitError(f'Cannot read native module {path}: {e}') from e
    try:
        return wasmtime.Module(engine, source)
    except wasmtime.WasmtimeError as e:
        raise BackendInitError(f'Native module {path} failed to compile: {e}') from e


def link_native_module(engine: wasmtime.Engine, module: wasmtime.Module) -> NativeModule:
    store = wasmtime.Store(engine)
    try:
        instance = wasmtime.Instance(store, module, [])
    except (wasmtime.WasmtimeError, wasmtime.Trap) as e:
        raise BackendInitError(f'Native module failed to instantiate: {e}') from e

    exports = instance.exports(store)
    resolved: Dict[str, Any] = {}
    for name, (kind, n_params) in REQUIRED_EXPORTS.items():
        try:
            extern = exports[name]
        except KeyError:
            raise BackendInitError(f'Native module does not export "{name}"') from None
        if not isinstance(extern, kind):
            raise BackendInitError(f'Native export "{name}" is not a {kind.__name__}')
        if n_params is not None and len(extern.type(store).params) != n_params:
            raise BackendInitError(f'Native export "{name}" should take {n_params} parameters')
        resolved[name] = extern
    return NativeModule(store=store, **resolved)


def load_native_module(path: str = DEFAULT_NATIVE_MODULE_PATH, engine: Optional[wasmtime.Engine] = None) -> NativeModule:
    engine = engine or wasmtime.Engine()
    return link_native_module(engine, compile_native_module(path, engine))


class ForeignBuffer:
    """A block of native linear memory, released when the ``with`` block exits."""

    def __init__(self, native: NativeModule, size: int):
        self.native = native
        self.size = int(size)
        self.ptr = 0

    def __enter__(self):
        ptr = self.native.alloc(self.native.store, self.size)
        if not ptr:
            raise ForeignAllocationError(f'Native module could not allocate {self.size} bytes')
        self.ptr = ptr
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.ptr:
            self.native.dealloc(self.native.store, self.ptr)
            self.ptr = 0

    def write(self, data: bytes) -> None:
        if data:
            self.native.memory.write(self.native.store, data, self.ptr)

    def read(self) -> bytearray:
        if not self.size:
            return bytearray()
        return self.native.memory.read(self.native.store, self.ptr, self.ptr + self.size)


class AcceleratedBackend(ComputeBackend):
    backend_id = ACCELERATED
    label = 'Accelerated (wasmtime)'

    def __init__(self, module_path: str = DEFAULT_NATIVE_MODULE_PATH):
        self.module_path = module_path
        self._engine = wasmtime.Engine()
        self._native: Optional[NativeModule] = None
        self.init_error: Optional[BackendInitError] = None

    @property
    def native(self) -> Optional[NativeModule]:
        return self._native

    async def init(self) -> 'AcceleratedBackend':
        """Compile (in a worker thread) and link the native module.

        A failure is recorded and re-raised; calling ``init`` again retries.
        """
        if self._native is not None:
            return self
        try:
            module = await asyncio.to_thread(compile_native_module, self.module_path, self._engine)
            self._native = link_native_module(self._engine, module)
        except BackendInitError as e:
            self.init_error = e
            logger.error('Accelerated backend failed to initialise: %s', e)
            raise
        self.init_error = None
        logger.info('Accelerated backend ready (%s)', self.module_path)
        return self

    def is_ready(self) -> bool:
        return self._native is not None

    def process(self, buffer: PixelBuffer, preset: Preset) -> float:
        native = self._native
        if native is None:
            raise BackendNotReadyError('Accelerated backend is not initialised')
        _check_gamma(preset)
        view = as_pixel_view(buffer)
        matrix = np.asarray(preset.matrix, dtype='<f4').tobytes()

        t0 = time.perf_counter()
        with ForeignBuffer(native, view.size) as pixels, ForeignBuffer(native, MATRIX_BYTES) as coeffs:
            pixels.write(view.tobytes())
            coeffs.write(matrix)
            try:
                native.apply_preset(
                    native.store,
                    pixels.ptr, buffer.width, buffer.height, coeffs.ptr,
                    float(preset.saturation), float(preset.contrast),
                    float(preset.brightness), float(preset.gamma),
                )
            except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
                raise NativeInvocationError(f'Native apply_preset failed: {e}') from e
            view[:] = np.frombuffer(pixels.read(), dtype=np.uint8)
        return (time.perf_counter() - t0) * 1000.0


def create_backend(backend_id: str, config: Optional[BenchmarkConfig] = None) -> ComputeBackend:
    config = config or BenchmarkConfig()
    if backend_id == DIRECT:
        return DirectBackend(config.chunk_pixels)
    if backend_id == ACCELERATED:
        return AcceleratedBackend(config.native_module_path)
    raise ValueError(f'Unknown backend: {backend_id!r} (expected one of {", ".join(BACKEND_IDS)})')
