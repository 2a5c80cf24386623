"""Preset catalog: loads and validates named filter-parameter definitions.

A preset source is a JSON mapping from preset key to::

    {"name": str, "description": str, "matrix": [9 numbers],
     "saturation": num, "contrast": num, "brightness": num, "gamma": num}

Loading is all-or-nothing: any unreachable source or malformed entry raises
``ConfigLoadError`` and no catalog is produced.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Tuple, Union

import requests

from config import DEFAULT_PRESETS_PATH
from errors import ConfigLoadError, UnknownPresetError

logger = logging.getLogger(__name__)

MATRIX_SIZE = 9
SCALAR_FIELDS = ('saturation', 'contrast', 'brightness', 'gamma')

PresetSource = Union[str, 'os.PathLike[str]', Mapping[str, Any]]


@dataclass(frozen=True)
class Preset:
    key: str
    name: str
    description: str
    matrix: Tuple[float, ...]
    saturation: float
    contrast: float
    brightness: float
    gamma: float

    @classmethod
    def from_dict(cls, key: str, data: Mapping[str, Any]) -> 'Preset':
        """Validate one source entry. Raises ValueError/TypeError describing the first problem."""
        if not isinstance(data, Mapping):
            raise TypeError(f'preset "{key}" must be an object, got {type(data).__name__}')
        missing = [f for f in ('name', 'description', 'matrix') + SCALAR_FIELDS if f not in data]
        if missing:
            raise ValueError(f'preset "{key}" is missing fields: {", ".join(missing)}')

        for text_field in ('name', 'description'):
            if not isinstance(data[text_field], str):
                raise TypeError(f'preset "{key}": {text_field} must be a string')

        matrix = data['matrix']
        if isinstance(matrix, (str, bytes)) or not hasattr(matrix, '__len__'):
            raise TypeError(f'preset "{key}": matrix must be a list of {MATRIX_SIZE} numbers')
        if len(matrix) != MATRIX_SIZE:
            raise ValueError(f'preset "{key}": matrix must have exactly {MATRIX_SIZE} values, got {len(matrix)}')
        coeffs = tuple(_finite_number(key, f'matrix[{i}]', v) for i, v in enumerate(matrix))

        scalars = {f: _finite_number(key, f, data[f]) for f in SCALAR_FIELDS}
        if scalars['gamma'] <= 0:
            raise ValueError(f'preset "{key}": gamma must be > 0, got {scalars["gamma"]}')

        return cls(key=key, name=data['name'], description=data['description'], matrix=coeffs, **scalars)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'matrix': list(self.matrix),
            'saturation': self.saturation,
            'contrast': self.contrast,
            'brightness': self.brightness,
            'gamma': self.gamma,
        }


def _finite_number(key: str, field_name: str, value: Any) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f'preset "{key}": {field_name} must be a number, got {value!r}')
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f'preset "{key}": {field_name} must be finite')
    return value


def _is_url(source: Any) -> bool:
    return isinstance(source, str) and source.startswith(('http://', 'https://'))


def _read_source(source: PresetSource, timeout: float) -> Any:
    if isinstance(source, Mapping):
        return source
    if _is_url(source):
        try:
            resp = requests.get(source, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ConfigLoadError(f'Failed to fetch presets from {source}: {e}') from e
    try:
        with open(source, 'r', encoding='utf-8') as f:
            return json.load(f)
    except OSError as e:
        raise ConfigLoadError(f'Failed to read presets from {source}: {e}') from e
    except json.JSONDecodeError as e:
        raise ConfigLoadError(f'Invalid JSON in preset source {source}: {e}') from e


class PresetCatalog:
    """Read-only registry of presets keyed by name, in source order."""

    def __init__(self, presets: Mapping[str, Preset]):
        self._presets: Dict[str, Preset] = dict(presets)

    @classmethod
    def load(cls, source: PresetSource = DEFAULT_PRESETS_PATH, timeout: float = 10.0) -> 'PresetCatalog':
        raw = _read_source(source, timeout)
        if not isinstance(raw, Mapping):
            raise ConfigLoadError(f'Preset source must be a mapping of name -> preset, got {type(raw).__name__}')
        if not raw:
            raise ConfigLoadError('Preset source defines no presets')

        presets: Dict[str, Preset] = {}
        for key, data in raw.items():
            if not isinstance(key, str) or not key:
                raise ConfigLoadError(f'Invalid preset key: {key!r}')
            try:
                presets[key] = Preset.from_dict(key, data)
            except (TypeError, ValueError) as e:
                raise ConfigLoadError(str(e)) from e

        logger.info('Loaded %d presets', len(presets))
        return cls(presets)

    @classmethod
    async def load_async(cls, source: PresetSource = DEFAULT_PRESETS_PATH, timeout: float = 10.0) -> 'PresetCatalog':
        return await asyncio.to_thread(cls.load, source, timeout)

    def names(self) -> List[str]:
        return list(self._presets)

    def lookup(self, key: str) -> Preset:
        try:
            return self._presets[key]
        except KeyError:
            raise UnknownPresetError(key) from None

    def describe(self) -> List[Dict[str, str]]:
        return [{'key': p.key, 'name': p.name, 'description': p.description} for p in self._presets.values()]

    def __len__(self) -> int:
        return len(self._presets)

    def __contains__(self, key: object) -> bool:
        return key in self._presets

    def __iter__(self) -> Iterator[Preset]:
        return iter(self._presets.values())
