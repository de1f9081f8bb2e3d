"""Spatial layout of the neuron pool.

Neuron ``i`` sits at ``x = i % width``, ``y = (i // width) % height`` and
``z = i // (width * height)``, one grid unit apart.  The grid is immutable
after construction, so the pairwise distance matrix is computed once.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np


class SpatialGrid:
    """Maps neuron indices to 2-D (``depth == 1``) or 3-D grid coordinates.

    Args:
        width: Number of columns (x extent).
        height: Number of rows (y extent).
        depth: Number of layers (z extent).
    """

    def __init__(self, width: int, height: int, depth: int = 1):
        if width < 1 or height < 1 or depth < 1:
            raise ValueError(f"Grid dimensions must be >= 1, got {width}x{height}x{depth}")
        self.width = width
        self.height = height
        self.depth = depth

        idx = np.arange(width * height * depth)
        xloc = (idx % width).astype(np.float64)
        yloc = ((idx // width) % height).astype(np.float64)
        zloc = (idx // (width * height)).astype(np.float64)
        for arr in (xloc, yloc, zloc):
            arr.setflags(write=False)
        self._xloc = xloc
        self._yloc = yloc
        self._zloc = zloc
        self._dist: np.ndarray | None = None

    def __len__(self) -> int:
        return self.width * self.height * self.depth

    def __repr__(self) -> str:
        return f"SpatialGrid({self.width}x{self.height}x{self.depth})"

    @property
    def is_3d(self) -> bool:
        return self.depth > 1

    @property
    def xloc(self) -> np.ndarray:
        return self._xloc

    @property
    def yloc(self) -> np.ndarray:
        return self._yloc

    @property
    def zloc(self) -> np.ndarray:
        return self._zloc

    def coordinate(self, index: int) -> Tuple[int, ...]:
        """Grid coordinate of a neuron: ``(x, y)`` or ``(x, y, z)``."""
        if not 0 <= index < len(self):
            raise IndexError(f"Neuron index {index} outside grid of {len(self)}")
        x = index % self.width
        y = (index // self.width) % self.height
        if self.is_3d:
            return (x, y, index // (self.width * self.height))
        return (x, y)

    def index_of(self, x: int, y: int, z: int = 0) -> int:
        """Inverse of ``coordinate``."""
        if not (0 <= x < self.width and 0 <= y < self.height and 0 <= z < self.depth):
            raise IndexError(f"Coordinate ({x}, {y}, {z}) outside {self!r}")
        return x + y * self.width + z * self.width * self.height

    def distance_matrix(self) -> np.ndarray:
        """Euclidean distance between every ordered pair (read-only, cached)."""
        if self._dist is None:
            coords = np.stack([self._xloc, self._yloc, self._zloc], axis=-1)
            diffs = coords[:, None, :] - coords[None, :, :]
            dist = np.sqrt(np.sum(diffs * diffs, axis=-1))
            dist.setflags(write=False)
            self._dist = dist
        return self._dist
