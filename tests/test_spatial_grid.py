"""Tests for the spatial grid: coordinates, indexing and distances."""

import math
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from spatial_grid import SpatialGrid


class TestCoordinates:
    def test_row_major_layout(self):
        g = SpatialGrid(3, 2)
        assert len(g) == 6
        assert g.coordinate(0) == (0, 0)
        assert g.coordinate(2) == (2, 0)
        assert g.coordinate(4) == (1, 1)
        assert list(g.xloc) == [0, 1, 2, 0, 1, 2]
        assert list(g.yloc) == [0, 0, 0, 1, 1, 1]

    def test_index_of_inverts_coordinate(self):
        g = SpatialGrid(4, 3, 2)
        for i in range(len(g)):
            assert g.index_of(*g.coordinate(i)) == i

    def test_3d_coordinates(self):
        g = SpatialGrid(2, 2, 2)
        assert g.is_3d
        assert g.coordinate(5) == (1, 0, 1)

    def test_out_of_range(self):
        g = SpatialGrid(2, 2)
        with pytest.raises(IndexError):
            g.coordinate(4)
        with pytest.raises(IndexError):
            g.index_of(2, 0)

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            SpatialGrid(0, 3)

    def test_locations_read_only(self):
        g = SpatialGrid(2, 2)
        with pytest.raises(ValueError):
            g.xloc[0] = 5.0


class TestDistances:
    def test_distance_matrix(self):
        d = SpatialGrid(2, 2).distance_matrix()
        assert d.shape == (4, 4)
        assert np.allclose(np.diag(d), 0.0)
        assert d[0, 1] == pytest.approx(1.0)
        assert d[0, 3] == pytest.approx(math.sqrt(2))
        assert np.allclose(d, d.T)

    def test_3d_distance(self):
        g = SpatialGrid(2, 2, 2)
        d = g.distance_matrix()
        assert d[0, 7] == pytest.approx(math.sqrt(3))

    def test_distance_matrix_cached(self):
        g = SpatialGrid(3, 3)
        assert g.distance_matrix() is g.distance_matrix()
        assert not g.distance_matrix().flags.writeable
