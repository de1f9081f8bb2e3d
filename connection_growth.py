"""
Connection growth: activity-dependent radius outgrowth and rewiring.

Every neuron has a circular connectivity radius.  At each epoch boundary:

    1. rate      = epoch spike count / epoch duration (counts are reset)
    2. outgrowth = 1 - 2 / (1 + exp((epsilon - rate / maxRate) / beta))
       positive below the target rate, zero at it, negative above it
    3. radius    = max(minRadius, radius + deltaR), deltaR = outgrowth
       (or rho * epochDuration * outgrowth when ``apply_rho`` is set)
    4. overlap area of every ordered pair of radius circles (lens formula)
    5. rewire: existing synapses with zero overlap are removed, the others
       get weight ``area * synapse_strength_adjustment``; pairs whose area
       exceeds ``min_overlap_area`` and have no synapse get one
    6. the radius/rate/outgrowth rows are appended to the history

Pairs are visited in increasing ``(source, target)`` order.  History rows
are frozen (read-only) once appended and never rewritten.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from neurogrowth_config import GrowthParams
from neurogrowth_errors import CapacityError
from neuron_bank import NeuronModel
from spatial_grid import SpatialGrid
from synapse_bank import SynapseBank, SynapseType

logger = logging.getLogger("neurogrowth.growth")

Pair = Tuple[int, int]


# ---------------------------------------------------------------------------
# Growth law and geometry
# ---------------------------------------------------------------------------

def compute_outgrowth(rates: np.ndarray, params: GrowthParams) -> np.ndarray:
    """Logistic outgrowth for each neuron's firing rate."""
    return 1.0 - 2.0 / (1.0 + np.exp((params.epsilon - rates / params.max_rate) / params.beta))


def overlap_areas(dist: np.ndarray, radii: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Frontier gap and overlap area for every ordered pair.

    Args:
        dist: ``[n, n]`` Euclidean distances.
        radii: ``[n]`` connectivity radii.

    Returns:
        ``(delta, area)`` where ``delta = dist - (r_i + r_j)`` and ``area`` is
        the circle intersection area (zero when ``delta >= 0`` and on the
        diagonal).
    """
    n = len(radii)
    r1 = np.broadcast_to(radii[:, None], (n, n))
    r2 = np.broadcast_to(radii[None, :], (n, n))
    delta = dist - (r1 + r2)
    area = np.zeros((n, n))

    overlap = delta < 0
    np.fill_diagonal(overlap, False)
    rmin = np.minimum(r1, r2)
    rmax = np.maximum(r1, r2)

    # One circle completely inside the other
    inside = overlap & (dist + rmin <= rmax)
    area[inside] = math.pi * rmin[inside] ** 2

    lens = overlap & ~inside
    if lens.any():
        d = dist[lens]
        a = r1[lens]
        b = r2[lens]
        with np.errstate(divide="ignore", invalid="ignore"):
            cos_a = np.clip((a * a + d * d - b * b) / (2.0 * a * d), -1.0, 1.0)
            cos_b = np.clip((b * b + d * d - a * a) / (2.0 * b * d), -1.0, 1.0)
        ang_a = 2.0 * np.arccos(cos_a)
        ang_b = 2.0 * np.arccos(cos_b)
        area[lens] = 0.5 * (a * a * (ang_a - np.sin(ang_a)) + b * b * (ang_b - np.sin(ang_b)))

    return delta, area


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------

def _frozen(row: np.ndarray) -> np.ndarray:
    row = np.array(row, dtype=np.float64, copy=True)
    row.setflags(write=False)
    return row


class ConnectionsState:
    """Current radii/overlap plus the append-only per-epoch histories.

    Also accumulates whole-network activity: ``burstiness_hist`` (spikes per
    simulated second) and ``spikes_history`` (spikes per 10 ms bin).
    """

    def __init__(self, grid: SpatialGrid, start_radius: float, delta_t: float):
        n = len(grid)
        self.num_neurons = n
        self.distance = grid.distance_matrix()
        self.radii = np.full(n, float(start_radius))
        self.rates = np.zeros(n)
        self.outgrowth = np.zeros(n)
        self.delta_r = np.zeros(n)
        self.delta, self.area = overlap_areas(self.distance, self.radii)

        self._radii_history: List[np.ndarray] = []
        self._rates_history: List[np.ndarray] = []
        self._outgrowth_history: List[np.ndarray] = []
        self._delta_r_history: List[np.ndarray] = []

        self._ticks_per_second = max(1, int(round(1.0 / delta_t)))
        self._ticks_per_bin = max(1, int(round(0.01 / delta_t)))
        self.burstiness_hist: List[int] = []
        self.spikes_history: List[int] = []

    @property
    def num_epochs(self) -> int:
        return len(self._radii_history)

    def _stack(self, rows: List[np.ndarray]) -> np.ndarray:
        if not rows:
            return np.zeros((0, self.num_neurons))
        return np.vstack(rows)

    @property
    def radii_history(self) -> np.ndarray:
        return self._stack(self._radii_history)

    @property
    def rates_history(self) -> np.ndarray:
        return self._stack(self._rates_history)

    @property
    def outgrowth_history(self) -> np.ndarray:
        return self._stack(self._outgrowth_history)

    @property
    def delta_r_history(self) -> np.ndarray:
        return self._stack(self._delta_r_history)

    def history_row(self, kind: str, epoch: int) -> np.ndarray:
        """Frozen row for ``epoch`` (1-based) of ``radii``/``rates``/``outgrowth``/``delta_r``."""
        rows = getattr(self, f"_{kind}_history")
        return rows[epoch - 1]

    def append_epoch(self, radii: np.ndarray, rates: np.ndarray,
                     outgrowth: np.ndarray, delta_r: np.ndarray) -> None:
        self._radii_history.append(_frozen(radii))
        self._rates_history.append(_frozen(rates))
        self._outgrowth_history.append(_frozen(outgrowth))
        self._delta_r_history.append(_frozen(delta_r))

    def record_spikes(self, tick: int, count: int) -> None:
        """Add ``count`` network spikes that happened at ``tick``."""
        for hist, width in ((self.burstiness_hist, self._ticks_per_second),
                            (self.spikes_history, self._ticks_per_bin)):
            idx = tick // width
            if idx >= len(hist):
                hist.extend([0] * (idx + 1 - len(hist)))
            hist[idx] += count

    def pad_activity(self, end_tick: int) -> None:
        """Extend the activity histograms with empty bins up to ``end_tick``."""
        for hist, width in ((self.burstiness_hist, self._ticks_per_second),
                            (self.spikes_history, self._ticks_per_bin)):
            size = -(-end_tick // width)
            if size > len(hist):
                hist.extend([0] * (size - len(hist)))

    def save_state(self) -> Dict[str, Any]:
        return {
            "radii": self.radii.tolist(),
            "rates": self.rates.tolist(),
            "outgrowth": self.outgrowth.tolist(),
            "delta_r": self.delta_r.tolist(),
            "radii_history": [r.tolist() for r in self._radii_history],
            "rates_history": [r.tolist() for r in self._rates_history],
            "outgrowth_history": [r.tolist() for r in self._outgrowth_history],
            "delta_r_history": [r.tolist() for r in self._delta_r_history],
            "burstiness_hist": list(self.burstiness_hist),
            "spikes_history": list(self.spikes_history),
        }

    def load_state(self, data: Dict[str, Any]) -> None:
        """Replace state; callers validate ``data`` beforehand."""
        self.radii = np.asarray(data["radii"], dtype=np.float64)
        self.rates = np.asarray(data["rates"], dtype=np.float64)
        self.outgrowth = np.asarray(data["outgrowth"], dtype=np.float64)
        self.delta_r = np.asarray(data["delta_r"], dtype=np.float64)
        self._radii_history = [_frozen(r) for r in data["radii_history"]]
        self._rates_history = [_frozen(r) for r in data["rates_history"]]
        self._outgrowth_history = [_frozen(r) for r in data["outgrowth_history"]]
        self._delta_r_history = [_frozen(r) for r in data["delta_r_history"]]
        self.burstiness_hist = [int(v) for v in data["burstiness_hist"]]
        self.spikes_history = [int(v) for v in data["spikes_history"]]
        self.delta, self.area = overlap_areas(self.distance, self.radii)


# ---------------------------------------------------------------------------
# Growth engine
# ---------------------------------------------------------------------------

@dataclass
class GrowthReport:
    """Outcome of one rewiring pass.

    Attributes:
        epoch: Epoch the pass closed (0 for the initial wiring).
        created: Pairs that gained a synapse, in canonical order.
        removed: Pairs whose synapse was removed.
        deferred: Pairs due for removal that still had a delivery in flight.
        capacity_skips: Pairs skipped because the source hit the synapse cap.
        updated: Number of surviving synapses whose weight was refreshed.
        total_synapses: Synapse count after the pass.
    """

    epoch: int = 0
    created: List[Pair] = field(default_factory=list)
    removed: List[Pair] = field(default_factory=list)
    deferred: List[Pair] = field(default_factory=list)
    capacity_skips: List[Pair] = field(default_factory=list)
    updated: int = 0
    total_synapses: int = 0
    mean_rate: float = 0.0
    mean_radius: float = 0.0


class ConnectionGrowthEngine:
    """Turns accumulated firing statistics into radius growth and rewiring.

    Depends only on the ``NeuronModel`` interface and the ``SynapseBank``.

    Args:
        params: Growth law parameters.
        grid: Spatial layout (distances are cached from it).
        epoch_duration: Simulated seconds per epoch.
        delta_t: Tick length in seconds.
        max_firing_rate: Rates above this are logged as suspicious.
    """

    def __init__(
        self,
        params: GrowthParams,
        grid: SpatialGrid,
        epoch_duration: float,
        delta_t: float,
        max_firing_rate: Optional[float] = None,
    ):
        self.params = params
        self.grid = grid
        self.epoch_duration = epoch_duration
        self.max_firing_rate = max_firing_rate
        self.state = ConnectionsState(grid, params.start_radius, delta_t)

    def _weight(self, area: float) -> float:
        return area * self.params.synapse_strength_adjustment

    def connect_initial(self, neurons: NeuronModel, synapses: SynapseBank) -> GrowthReport:
        """Wire the starting topology from the start radii; no history row."""
        report = self._rewire(0, self.state.area, neurons, synapses)
        logger.info("Initial wiring: %d synapses", report.total_synapses)
        return report

    def grow(self, epoch: int, neurons: NeuronModel, synapses: SynapseBank) -> GrowthReport:
        """Run the full growth update for the epoch that just ended."""
        p = self.params
        st = self.state

        counts = neurons.take_spike_counts()
        rates = counts / self.epoch_duration
        if self.max_firing_rate is not None and rates.size and rates.max() > self.max_firing_rate:
            logger.warning(
                "Epoch %d: neuron %d fired at %.1f Hz, above max_firing_rate %s",
                epoch, int(rates.argmax()), float(rates.max()), self.max_firing_rate,
            )

        outgrowth = compute_outgrowth(rates, p)
        if p.apply_rho:
            delta_r = self.epoch_duration * p.rho * outgrowth
        else:
            delta_r = outgrowth
        radii = np.maximum(p.min_radius, st.radii + delta_r)
        delta, area = overlap_areas(st.distance, radii)

        report = self._rewire(epoch, area, neurons, synapses)

        st.rates = rates
        st.outgrowth = outgrowth
        st.delta_r = delta_r
        st.radii = radii
        st.delta = delta
        st.area = area
        st.append_epoch(radii, rates, outgrowth, delta_r)

        report.mean_rate = float(rates.mean()) if rates.size else 0.0
        report.mean_radius = float(radii.mean()) if radii.size else 0.0
        logger.info(
            "Epoch %d growth: mean rate %.3f Hz, mean radius %.3f, +%d/-%d synapses "
            "(%d deferred, %d capacity skips), %d total",
            epoch, report.mean_rate, report.mean_radius, len(report.created),
            len(report.removed), len(report.deferred), len(report.capacity_skips),
            report.total_synapses,
        )
        return report

    def _rewire(self, epoch: int, area: np.ndarray, neurons: NeuronModel,
                synapses: SynapseBank) -> GrowthReport:
        report = GrowthReport(epoch=epoch)
        inhibitory = neurons.is_inhibitory()

        # Removals and weight refresh for existing synapses
        for src, dst in synapses.pairs():
            a = float(area[src, dst])
            if a == 0.0:
                if synapses.remove_synapse(src, dst):
                    report.removed.append((src, dst))
                else:
                    report.deferred.append((src, dst))
                    logger.warning("Epoch %d: removal of %d->%d deferred, delivery pending", epoch, src, dst)
            else:
                synapses.set_weight(src, dst, self._weight(a))
                report.updated += 1

        # Creations for newly overlapping pairs
        for src, dst in np.argwhere(area > self.params.min_overlap_area):
            src, dst = int(src), int(dst)
            if src == dst or (src, dst) in synapses:
                continue
            syn_type = SynapseType.between(bool(inhibitory[src]), bool(inhibitory[dst]))
            try:
                synapses.create_synapse(src, dst, self._weight(float(area[src, dst])), syn_type)
            except CapacityError as exc:
                report.capacity_skips.append((src, dst))
                logger.warning("Epoch %d: skipped %d->%d: %s", epoch, src, dst, exc)
                continue
            report.created.append((src, dst))

        report.total_synapses = len(synapses)
        return report

    def save_state(self) -> Dict[str, Any]:
        return self.state.save_state()

    def load_state(self, data: Dict[str, Any]) -> None:
        self.state.load_state(data)
