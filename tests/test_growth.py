"""Tests for activity-dependent outgrowth, overlap geometry and rewiring."""

import math
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from connection_growth import (
    ConnectionGrowthEngine,
    ConnectionsState,
    compute_outgrowth,
    overlap_areas,
)
from neurogrowth_config import GrowthParams
from spatial_grid import SpatialGrid
from synapse_bank import SynapseBank, SynapseType

DT = 1e-4


class FixedActivity:
    """Neuron model stand-in that reports preset spike counts."""

    def __init__(self, counts, inhibitory=None):
        self.counts = np.asarray(counts, dtype=np.int64)
        n = len(self.counts)
        self.inhibitory = np.zeros(n, dtype=bool) if inhibitory is None else np.asarray(inhibitory)

    def take_spike_counts(self):
        return self.counts.copy()

    def is_inhibitory(self):
        return self.inhibitory


def _engine(width, height=1, cap=200, **params):
    grid = SpatialGrid(width, height)
    engine = ConnectionGrowthEngine(GrowthParams(**params), grid, epoch_duration=1.0, delta_t=DT)
    synapses = SynapseBank(num_neurons=len(grid), max_per_neuron=cap, delta_t=DT)
    return engine, synapses


class TestOutgrowth:
    def test_zero_at_target_rate(self):
        out = compute_outgrowth(np.array([1.9]), GrowthParams())
        assert out[0] == pytest.approx(0.0, abs=1e-12)

    def test_positive_below_target(self):
        out = compute_outgrowth(np.array([0.0, 1.0]), GrowthParams())
        assert np.all(out > 0)

    def test_negative_above_target(self):
        out = compute_outgrowth(np.array([5.0, 100.0]), GrowthParams())
        assert np.all(out < 0)
        assert out[1] == pytest.approx(-1.0)

    def test_bounded(self):
        out = compute_outgrowth(np.linspace(0, 1000, 50), GrowthParams())
        assert np.all(out > -1.0 - 1e-12) and np.all(out < 1.0)


class TestOverlapArea:
    def test_lens(self):
        dist = np.array([[0.0, 1.0], [1.0, 0.0]])
        delta, area = overlap_areas(dist, np.array([1.0, 1.0]))
        expected = 2 * math.acos(0.5) - 0.5 * math.sqrt(3)
        assert area[0, 1] == pytest.approx(expected)
        assert area[1, 0] == pytest.approx(expected)
        assert delta[0, 1] == pytest.approx(-1.0)

    def test_one_inside_other(self):
        dist = np.array([[0.0, 1.0], [1.0, 0.0]])
        _, area = overlap_areas(dist, np.array([2.0, 0.5]))
        assert area[0, 1] == pytest.approx(math.pi * 0.25)

    def test_disjoint_and_tangent(self):
        dist = np.array([[0.0, 1.0], [1.0, 0.0]])
        _, area = overlap_areas(dist, np.array([0.4, 0.4]))
        assert np.all(area == 0.0)
        _, area = overlap_areas(dist, np.array([0.5, 0.5]))
        assert np.all(area == 0.0)

    def test_diagonal_zero(self):
        dist = SpatialGrid(3, 3).distance_matrix()
        _, area = overlap_areas(dist, np.full(9, 2.0))
        assert np.all(np.diag(area) == 0.0)
        assert np.allclose(area, area.T)


class TestRadiusUpdate:
    def test_min_radius_clamp(self):
        engine, synapses = _engine(2)
        engine.grow(1, FixedActivity([100, 100]), synapses)
        assert engine.state.radii == pytest.approx([0.1, 0.1])

    def test_growth_below_target(self):
        engine, synapses = _engine(2)
        engine.grow(1, FixedActivity([0, 0]), synapses)
        expected = 0.4 + compute_outgrowth(np.zeros(1), GrowthParams())[0]
        assert engine.state.radii[0] == pytest.approx(expected)

    def test_rho_scaling(self):
        engine, synapses = _engine(2, apply_rho=True, rho=0.5)
        engine.grow(1, FixedActivity([0, 0]), synapses)
        out = compute_outgrowth(np.zeros(1), GrowthParams())[0]
        assert engine.state.delta_r[0] == pytest.approx(0.5 * out)

    def test_rates_from_counts(self):
        engine, synapses = _engine(3)
        engine.grow(1, FixedActivity([2, 4, 0]), synapses)
        assert list(engine.state.rates) == [2.0, 4.0, 0.0]


class TestRewire:
    def test_initial_wiring_from_start_radius(self):
        engine, synapses = _engine(2, start_radius=0.6)
        report = engine.connect_initial(FixedActivity([0, 0]), synapses)
        assert report.created == [(0, 1), (1, 0)]
        assert engine.state.num_epochs == 0

    def test_weight_from_area(self):
        engine, synapses = _engine(2, start_radius=0.6)
        engine.connect_initial(FixedActivity([0, 0]), synapses)
        area = engine.state.area[0, 1]
        assert synapses.get(0, 1).weight == pytest.approx(area * 1e-8)

    def test_subtype_from_neuron_types(self):
        engine, synapses = _engine(2, start_radius=0.6)
        engine.connect_initial(FixedActivity([0, 0], inhibitory=[True, False]), synapses)
        assert synapses.get(0, 1).synapse_type is SynapseType.IE
        assert synapses.get(1, 0).synapse_type is SynapseType.EI
        assert synapses.get(0, 1).weight < 0

    def test_zero_overlap_removed_not_recreated(self):
        engine, synapses = _engine(2, start_radius=0.6)
        engine.connect_initial(FixedActivity([0, 0]), synapses)
        report = engine.grow(1, FixedActivity([100, 100]), synapses)
        assert report.removed == [(0, 1), (1, 0)]
        assert report.created == []
        assert len(synapses) == 0

    def test_removal_deferred_when_pending(self):
        engine, synapses = _engine(2, start_radius=0.6)
        engine.connect_initial(FixedActivity([0, 0]), synapses)
        synapses.notify(0, 0)
        report = engine.grow(1, FixedActivity([100, 100]), synapses)
        assert report.deferred == [(0, 1)]
        assert report.removed == [(1, 0)]
        assert (0, 1) in synapses

    def test_surviving_weights_refreshed(self):
        engine, synapses = _engine(2, start_radius=0.6)
        engine.connect_initial(FixedActivity([0, 0]), synapses)
        before = synapses.get(0, 1).weight
        report = engine.grow(1, FixedActivity([0, 0]), synapses)
        assert report.updated == 2
        assert synapses.get(0, 1).weight > before
        assert synapses.get(0, 1).weight == pytest.approx(engine.state.area[0, 1] * 1e-8)

    def test_capacity_skips_in_canonical_order(self):
        engine, synapses = _engine(3, cap=1, start_radius=1.5)
        report = engine.connect_initial(FixedActivity([0, 0, 0]), synapses)
        assert report.created == [(0, 1), (1, 0), (2, 0)]
        assert report.capacity_skips == [(0, 2), (1, 2), (2, 1)]
        assert report.total_synapses == 3

    def test_min_overlap_area(self):
        engine, synapses = _engine(2, start_radius=0.6, min_overlap_area=10.0)
        report = engine.connect_initial(FixedActivity([0, 0]), synapses)
        assert report.created == []


class TestHistory:
    def test_rows_appended_per_epoch(self):
        engine, synapses = _engine(2)
        engine.grow(1, FixedActivity([0, 0]), synapses)
        engine.grow(2, FixedActivity([5, 5]), synapses)
        st = engine.state
        assert st.num_epochs == 2
        assert st.radii_history.shape == (2, 2)
        assert st.rates_history.shape == (2, 2)
        assert st.outgrowth_history.shape == (2, 2)
        assert st.delta_r_history.shape == (2, 2)

    def test_rows_frozen(self):
        engine, synapses = _engine(2)
        engine.grow(1, FixedActivity([0, 0]), synapses)
        row = engine.state.history_row("radii", 1)
        snapshot = row.copy()
        with pytest.raises(ValueError):
            row[0] = 99.0
        engine.grow(2, FixedActivity([100, 100]), synapses)
        assert np.array_equal(engine.state.history_row("radii", 1), snapshot)

    def test_empty_history_shape(self):
        st = ConnectionsState(SpatialGrid(2, 2), 0.4, DT)
        assert st.radii_history.shape == (0, 4)


class TestActivityHistograms:
    def test_bins(self):
        st = ConnectionsState(SpatialGrid(2, 1), 0.4, DT)
        st.record_spikes(5, 2)
        st.record_spikes(150, 1)
        st.record_spikes(10500, 3)
        st.pad_activity(20000)
        assert st.burstiness_hist == [3, 3]
        assert len(st.spikes_history) == 200
        assert st.spikes_history[0] == 2
        assert st.spikes_history[1] == 1
        assert st.spikes_history[105] == 3
