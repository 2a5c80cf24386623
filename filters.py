"""Fixed five-stage color pipeline.

Matrix -> Brightness -> Saturation -> Contrast -> Gamma, computed in float64
without intermediate clamping. The stage functions accept Python floats or
numpy channel arrays so the per-pixel ``transform`` and the vectorised
``apply_to_pixels`` share one implementation.

Write-back: the gamma base is clamped to >= 0 before exponentiation, and the
final value is clamped to [0, 255] and rounded half-up (NaN -> 0).
"""
from __future__ import annotations

import logging
import time
from typing import Tuple

import numpy as np

from config import DEFAULT_CHUNK_PIXELS
from errors import UnknownPresetError
from presets import Preset, PresetCatalog
from utils import PixelBuffer, as_pixel_view

logger = logging.getLogger(__name__)

# ITU-R BT.709
LUMA_R = 0.2126
LUMA_G = 0.7152
LUMA_B = 0.0722


def apply_matrix(r, g, b, matrix):
    new_r = r * matrix[0] + g * matrix[1] + b * matrix[2]
    new_g = r * matrix[3] + g * matrix[4] + b * matrix[5]
    new_b = r * matrix[6] + g * matrix[7] + b * matrix[8]
    return new_r, new_g, new_b


def apply_brightness(r, g, b, brightness):
    return r * brightness, g * brightness, b * brightness


def apply_saturation(r, g, b, saturation):
    luma = LUMA_R * r + LUMA_G * g + LUMA_B * b
    return (luma + saturation * (r - luma),
            luma + saturation * (g - luma),
            luma + saturation * (b - luma))


def _contrast(c, contrast):
    return ((c / 255.0 - 0.5) * contrast + 0.5) * 255.0


def apply_contrast(r, g, b, contrast):
    return _contrast(r, contrast), _contrast(g, contrast), _contrast(b, contrast)


def _gamma(c, gamma):
    return np.power(np.maximum(c, 0.0) / 255.0, gamma) * 255.0


def apply_gamma(r, g, b, gamma):
    if gamma <= 0:
        raise ValueError(f'gamma must be > 0, got {gamma}')
    return _gamma(r, gamma), _gamma(g, gamma), _gamma(b, gamma)


def to_byte(c):
    """Clamp to [0, 255] and round half-up. Returns uint8 (array or scalar)."""
    c = np.nan_to_num(c, nan=0.0, posinf=255.0, neginf=0.0)
    return np.floor(np.clip(c, 0.0, 255.0) + 0.5).astype(np.uint8)


def _run_stages(r, g, b, preset: Preset):
    r, g, b = apply_matrix(r, g, b, preset.matrix)
    r, g, b = apply_brightness(r, g, b, preset.brightness)
    r, g, b = apply_saturation(r, g, b, preset.saturation)
    r, g, b = apply_contrast(r, g, b, preset.contrast)
    return apply_gamma(r, g, b, preset.gamma)


def transform(pixel: Tuple[int, int, int], preset: Preset) -> Tuple[int, int, int]:
    """Run one (r, g, b) triple through the pipeline."""
    r, g, b = (float(c) for c in pixel[:3])
    with np.errstate(over='ignore', invalid='ignore'):
        r, g, b = _run_stages(r, g, b, preset)
    return int(to_byte(r)), int(to_byte(g)), int(to_byte(b))


def apply_to_pixels(pixels: np.ndarray, preset: Preset, chunk_pixels: int = DEFAULT_CHUNK_PIXELS) -> None:
    """Apply the pipeline in place to a flat RGBA uint8 view. Alpha is never written."""
    quads = pixels.reshape(-1, 4)
    step = max(1, int(chunk_pixels))
    for start in range(0, quads.shape[0], step):
        block = quads[start:start + step]
        rgb = block[:, :3].astype(np.float64)
        with np.errstate(over='ignore', invalid='ignore'):
            r, g, b = _run_stages(rgb[:, 0], rgb[:, 1], rgb[:, 2], preset)
        block[:, 0] = to_byte(r)
        block[:, 1] = to_byte(g)
        block[:, 2] = to_byte(b)


class FilterPipeline:
    """Applies catalog presets to pixel buffers in the caller's memory."""

    def __init__(self, catalog: PresetCatalog, chunk_pixels: int = DEFAULT_CHUNK_PIXELS):
        self.catalog = catalog
        self.chunk_pixels = chunk_pixels

    def apply_preset(self, buffer: PixelBuffer, preset_key: str) -> float:
        """Filter ``buffer`` in place; returns elapsed wall-clock milliseconds.

        Raises UnknownPresetError before touching the buffer.
        """
        if preset_key not in self.catalog:
            raise UnknownPresetError(preset_key)
        preset = self.catalog.lookup(preset_key)
        t0 = time.perf_counter()
        apply_to_pixels(as_pixel_view(buffer), preset, self.chunk_pixels)
        elapsed = (time.perf_counter() - t0) * 1000.0
        logger.debug('Applied %s to %d pixels in %.2f ms', preset_key, buffer.pixel_count, elapsed)
        return elapsed
