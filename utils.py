"""Pixel buffer model plus image decoding, loading and validation helpers.

The filter pipeline and both backends operate on ``PixelBuffer``: a flat,
writable uint8 RGBA view with its dimensions. Helpers here document the
exceptions they raise so callers can handle them consistently.
"""
from dataclasses import dataclass
from typing import Optional, Union

import cv2
import numpy as np
from PIL import Image

CHANNELS = 4


@dataclass
class PixelBuffer:
    """Interleaved RGBA bytes. ``data`` is always a flat writable uint8 view."""
    data: np.ndarray
    width: int
    height: int

    def __post_init__(self):
        self.data = _flat_view(self.data)
        validate_pixel_buffer(self.data, self.width, self.height)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def nbytes(self) -> int:
        return int(self.data.size)

    def copy(self) -> 'PixelBuffer':
        return PixelBuffer(self.data.copy(), self.width, self.height)

    def to_rgba_array(self) -> np.ndarray:
        return self.data.reshape(self.height, self.width, CHANNELS)

    @classmethod
    def from_rgba_array(cls, arr: np.ndarray) -> 'PixelBuffer':
        """Wrap an (H, W, 4) uint8 array; contiguous input is shared, not copied."""
        if arr is None or getattr(arr, 'ndim', None) != 3 or arr.shape[2] != CHANNELS:
            raise ValueError(f'expected an (H, W, 4) RGBA array, got shape {getattr(arr, "shape", None)}')
        h, w = int(arr.shape[0]), int(arr.shape[1])
        return cls(np.ascontiguousarray(arr, dtype=np.uint8), w, h)

    @classmethod
    def from_bytes(cls, data: Union[bytearray, memoryview], width: int, height: int) -> 'PixelBuffer':
        """Wrap a mutable byte buffer without copying; mutation is visible to the owner."""
        return cls(np.frombuffer(data, dtype=np.uint8), width, height)


def _flat_view(data) -> np.ndarray:
    if isinstance(data, (bytearray, memoryview)):
        data = np.frombuffer(data, dtype=np.uint8)
    if not isinstance(data, np.ndarray):
        raise TypeError(f'pixel data must be a numpy array or bytearray, got {type(data).__name__}')
    if not data.flags['C_CONTIGUOUS']:
        raise ValueError('pixel data must be C-contiguous')
    return data.reshape(-1)


def validate_pixel_buffer(data: np.ndarray, width: int, height: int) -> None:
    """Validate a flat RGBA buffer against its dimensions.

    Raises TypeError for a wrong dtype and ValueError for shape problems.
    """
    if data.dtype != np.uint8:
        raise TypeError(f'pixel data must be uint8, got {data.dtype}')
    if int(width) < 0 or int(height) < 0:
        raise ValueError('Image has negative dimensions')
    if data.size % CHANNELS != 0:
        raise ValueError(f'pixel buffer length {data.size} is not divisible by {CHANNELS}')
    expected = int(width) * int(height) * CHANNELS
    if data.size != expected:
        raise ValueError(f'pixel buffer length {data.size} does not match {width}x{height} RGBA ({expected} bytes)')
    if not data.flags['WRITEABLE']:
        raise ValueError('pixel buffer must be writable')


def as_pixel_view(buffer: Union[PixelBuffer, np.ndarray]) -> np.ndarray:
    if isinstance(buffer, PixelBuffer):
        return buffer.data
    return _flat_view(buffer)


def safe_decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes to an (H, W, 4) RGBA array.

    Returns None on decode failure instead of raising.
    """
    if not image_bytes:
        return None
    try:
        arr = np.frombuffer(image_bytes, dtype=np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED)
    except cv2.error:
        return None
    if img is None:
        return None
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    return cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)


def load_rgba_image(path: str) -> PixelBuffer:
    """Load an image file as an RGBA pixel buffer. Raises OSError if it cannot be read."""
    with Image.open(path) as im:
        arr = np.array(im.convert('RGBA'))
    return PixelBuffer.from_rgba_array(arr)


def save_rgba_image(buffer: PixelBuffer, path: str) -> None:
    Image.fromarray(buffer.to_rgba_array()).save(path)


def create_synthetic_test_image(width: int, height: int, complexity: str = 'moderate', seed: int = 0) -> PixelBuffer:
    """Gradient background with drawn shapes; 'complex' adds random lines and partial alpha."""
    if width <= 0 or height <= 0:
        raise ValueError('width and height must be positive')
    xs = np.linspace(0, 255, width, dtype=np.float64)
    ys = np.linspace(0, 255, height, dtype=np.float64)
    img = np.empty((height, width, 4), dtype=np.uint8)
    img[..., 0] = xs[None, :].astype(np.uint8)
    img[..., 1] = ys[:, None].astype(np.uint8)
    img[..., 2] = ((xs[None, :] + ys[:, None]) / 2).astype(np.uint8)
    img[..., 3] = 255

    if complexity in ('moderate', 'complex'):
        cv2.rectangle(img, (width // 8, height // 8), (width // 2, height // 2), (220, 40, 40, 255), -1)
        cv2.circle(img, (width * 2 // 3, height * 2 // 3), max(1, min(width, height) // 6), (30, 200, 90, 255), -1)
    if complexity == 'complex':
        rng = np.random.RandomState(seed)
        for _ in range(200):
            x1, x2 = rng.randint(0, width, size=2)
            y1, y2 = rng.randint(0, height, size=2)
            color = tuple(int(c) for c in rng.randint(0, 256, size=4))
            cv2.line(img, (int(x1), int(y1)), (int(x2), int(y2)), color, 1)
    return PixelBuffer.from_rgba_array(img)
