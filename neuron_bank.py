"""
NeuronBank: per-neuron dynamical state and the leaky-integrate-and-fire step.

The membrane potential of every neuron follows

    tau_m dVm/dt = -(Vm - Vresting) + Rm * (Isyn + Iinject + Inoise)

integrated with the exponential Euler method:

    Vm <- Vresting + (Vm - Vresting) * C1 + Rm * I * (1 - C1),  C1 = exp(-dt / tau_m)

Each tick, per neuron:
    1. Refractory: decrement the counter and hold Vm at Vreset.
    2. Otherwise, Vm >= Vthresh: spike, reset to Vreset, start refractory
       period, count the spike and notify the outgoing synapses.
    3. Otherwise integrate, using the summation bin as Isyn.
The summation bin is cleared after every read.

State is held in contiguous numpy arrays indexed by neuron index.  Models
implement the ``NeuronModel`` interface; ``create_neuron_model`` picks the
implementation named in the configuration.
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Type

import numpy as np

from neurogrowth_config import SimulationConfig
from neurogrowth_errors import ConfigurationError
from spatial_grid import SpatialGrid

logger = logging.getLogger("neurogrowth.neurons")


class NeuronType(Enum):
    """Neuron type; endogenously active neurons are excitatory starters."""
    EXCITATORY = auto()
    INHIBITORY = auto()
    ENDOGENOUSLY_ACTIVE = auto()

    @property
    def is_inhibitory(self) -> bool:
        return self is NeuronType.INHIBITORY


_TYPE_CODES = {t: i for i, t in enumerate(NeuronType)}
_CODE_TYPES = {i: t for t, i in _TYPE_CODES.items()}


class NeuronModel:
    """Capability interface shared by neuron model implementations.

    The growth engine and the scheduler depend only on this interface.
    Subclass and override every method to add a model.
    """

    num_neurons: int = 0

    def read_parameters(self, config: SimulationConfig) -> None:
        raise NotImplementedError

    def create_all_neurons(self, grid: SpatialGrid) -> None:
        raise NotImplementedError

    def step(self, tick: int, synapses: Any) -> np.ndarray:
        """Advance one tick; return the indices of neurons that fired."""
        raise NotImplementedError

    def take_spike_counts(self) -> np.ndarray:
        """Return per-neuron spike counts for the epoch and reset them."""
        raise NotImplementedError

    def is_inhibitory(self) -> np.ndarray:
        raise NotImplementedError

    def starter_mask(self) -> np.ndarray:
        raise NotImplementedError

    def neuron_types(self) -> List["NeuronType"]:
        raise NotImplementedError

    def thresholds(self) -> np.ndarray:
        raise NotImplementedError

    @property
    def summation(self) -> np.ndarray:
        """Per-neuron synaptic input bins written by the synapse bank."""
        raise NotImplementedError

    def save_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def load_state(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError


class LIFNeuronBank(NeuronModel):
    """Leaky-integrate-and-fire neurons with absolute refractory period.

    Args:
        config: Validated simulation configuration.
        rng: The simulation's single random stream.  Parameter draws at
            build time and the per-tick noise current are taken from it in
            increasing neuron index order.
    """

    # Ranges every neuron needs, and the extra ones for starter neurons
    _COMMON_RANGES = ("i_inject", "i_noise", "v_resting", "v_init")
    _REGULAR_RANGES = ("v_thresh", "v_reset")
    _STARTER_RANGES = ("starter_v_thresh", "starter_v_reset")

    def __init__(self, config: SimulationConfig, rng: np.random.Generator):
        self._rng = rng
        self.read_parameters(config)

        n = config.num_neurons
        self.num_neurons = n
        self.vm = np.zeros(n)
        self.v_thresh = np.zeros(n)
        self.v_resting = np.zeros(n)
        self.v_reset = np.zeros(n)
        self.v_init = np.zeros(n)
        self.i_inject = np.zeros(n)
        self.i_noise = np.zeros(n)
        self.rm = np.zeros(n)
        self.cm = np.zeros(n)
        self.c1 = np.zeros(n)
        self.c2 = np.zeros(n)
        self.refractory_period = np.zeros(n, dtype=np.int64)
        self.refractory_remaining = np.zeros(n, dtype=np.int64)
        self.spike_count = np.zeros(n, dtype=np.int64)
        self.total_spikes = np.zeros(n, dtype=np.int64)
        self.type_codes = np.zeros(n, dtype=np.int8)
        self._summation = np.zeros(n)
        self._created = False

    def __repr__(self) -> str:
        return f"LIFNeuronBank(neurons={self.num_neurons}, created={self._created})"

    # -----------------------------------------------------------------------
    # Parameters
    # -----------------------------------------------------------------------

    def read_parameters(self, config: SimulationConfig) -> None:
        """Copy the neuron parameters, failing if any voltage/current is missing.

        Starter neurons need their own threshold/reset ranges only when the
        configuration can produce starters.
        """
        params = config.neuron_params
        needed = list(self._COMMON_RANGES) + list(self._REGULAR_RANGES)
        has_starters = (
            config.layout.endogenously_active if config.layout is not None
            else config.fractions.starter > 0
        )
        if has_starters:
            needed += list(self._STARTER_RANGES)

        errors = [
            f"neuron_params.{name}: required for "
            f"{'endogenously active' if name.startswith('starter') else 'all'} neurons"
            for name in needed
            if getattr(params, name, None) is None
        ]
        for name in ("cm", "rm", "t_refract"):
            value = getattr(params, name, None)
            if value is None or value <= 0:
                errors.append(f"neuron_params.{name}: must be a positive number")
        if errors:
            raise ConfigurationError(errors)

        self._params = params
        self._fractions = config.fractions
        self._layout = config.layout
        self._dt = config.sim_params.delta_t

    # -----------------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------------

    def _generate_type_map(self) -> np.ndarray:
        n = self.num_neurons
        codes = np.full(n, _TYPE_CODES[NeuronType.EXCITATORY], dtype=np.int8)

        if self._layout is not None:
            inhibitory = list(self._layout.inhibitory)
            starters = list(self._layout.endogenously_active)
        else:
            num_inh = int(round((1.0 - self._fractions.excitatory) * n))
            inhibitory = sorted(int(i) for i in self._rng.choice(n, size=num_inh, replace=False))
            excitatory = np.setdiff1d(np.arange(n), inhibitory)
            num_start = min(int(round(self._fractions.starter * n)), len(excitatory))
            starters = sorted(int(i) for i in self._rng.choice(excitatory, size=num_start, replace=False))

        codes[inhibitory] = _TYPE_CODES[NeuronType.INHIBITORY]
        codes[starters] = _TYPE_CODES[NeuronType.ENDOGENOUSLY_ACTIVE]
        return codes

    def _draw(self, name: str, size: int) -> np.ndarray:
        low, high = getattr(self._params, name)
        return self._rng.uniform(low, high, size=size)

    def create_all_neurons(self, grid: SpatialGrid) -> None:
        """Assign neuron types and draw per-neuron parameters."""
        n = self.num_neurons
        if len(grid) != n:
            raise ValueError(f"Grid holds {len(grid)} positions but the bank has {n} neurons")

        self.type_codes = self._generate_type_map()
        starters = self.type_codes == _TYPE_CODES[NeuronType.ENDOGENOUSLY_ACTIVE]
        num_start = int(starters.sum())

        self.i_inject = self._draw("i_inject", n)
        self.i_noise = self._draw("i_noise", n)
        self.v_thresh = self._draw("v_thresh", n)
        self.v_resting = self._draw("v_resting", n)
        self.v_reset = self._draw("v_reset", n)
        self.v_init = self._draw("v_init", n)
        if num_start:
            self.v_thresh[starters] = self._draw("starter_v_thresh", num_start)
            self.v_reset[starters] = self._draw("starter_v_reset", num_start)

        self.rm = np.full(n, self._params.rm)
        self.cm = np.full(n, self._params.cm)
        tau = self.rm * self.cm
        self.c1 = np.exp(-self._dt / tau)
        self.c2 = self.rm * (1.0 - self.c1)
        self.refractory_period = np.full(
            n, int(self._params.t_refract / self._dt + 0.5), dtype=np.int64)

        self.vm = self.v_init.copy()
        self.refractory_remaining[:] = 0
        self.spike_count[:] = 0
        self.total_spikes[:] = 0
        self._summation[:] = 0.0
        self._created = True

        logger.info(
            "Created %d neurons: %d excitatory, %d inhibitory, %d endogenously active",
            n,
            int(np.sum(self.type_codes == _TYPE_CODES[NeuronType.EXCITATORY])),
            int(np.sum(self.type_codes == _TYPE_CODES[NeuronType.INHIBITORY])),
            num_start,
        )

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    @property
    def summation(self) -> np.ndarray:
        return self._summation

    def neuron_type(self, index: int) -> NeuronType:
        return _CODE_TYPES[int(self.type_codes[index])]

    def neuron_types(self) -> List[NeuronType]:
        return [_CODE_TYPES[int(c)] for c in self.type_codes]

    def is_inhibitory(self) -> np.ndarray:
        return self.type_codes == _TYPE_CODES[NeuronType.INHIBITORY]

    def starter_mask(self) -> np.ndarray:
        return self.type_codes == _TYPE_CODES[NeuronType.ENDOGENOUSLY_ACTIVE]

    def thresholds(self) -> np.ndarray:
        return self.v_thresh.copy()

    def take_spike_counts(self) -> np.ndarray:
        counts = self.spike_count.copy()
        self.spike_count[:] = 0
        return counts

    # -----------------------------------------------------------------------
    # Simulation
    # -----------------------------------------------------------------------

    def step(self, tick: int, synapses: Any) -> np.ndarray:
        """Advance every neuron by one tick.

        Args:
            tick: Current simulation tick.
            synapses: Object with ``notify(source, tick)``; called once per
                fired neuron in increasing index order.

        Returns:
            Indices of neurons that fired this tick.
        """
        noise = self._rng.standard_normal(self.num_neurons)

        refractory = self.refractory_remaining > 0
        self.refractory_remaining[refractory] -= 1
        self.vm[refractory] = self.v_reset[refractory]

        fire = ~refractory & (self.vm >= self.v_thresh)
        integrate = ~(refractory | fire)

        current = self._summation + self.i_inject + noise * self.i_noise
        v_rest = self.v_resting
        self.vm = np.where(
            integrate,
            v_rest + (self.vm - v_rest) * self.c1 + self.c2 * current,
            self.vm,
        )
        self._summation[:] = 0.0

        fired = np.flatnonzero(fire)
        if fired.size:
            self.vm[fired] = self.v_reset[fired]
            self.refractory_remaining[fired] = self.refractory_period[fired]
            self.spike_count[fired] += 1
            self.total_spikes[fired] += 1
            for src in fired:
                synapses.notify(int(src), tick)

        assert np.isfinite(self.vm).all(), f"non-finite membrane voltage at tick {tick}"
        return fired

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    _ARRAYS = (
        "vm", "v_thresh", "v_resting", "v_reset", "v_init", "i_inject",
        "i_noise", "rm", "cm", "c1", "c2",
    )
    _INT_ARRAYS = ("refractory_period", "refractory_remaining", "spike_count", "total_spikes")

    def save_state(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: getattr(self, name).tolist() for name in self._ARRAYS}
        data.update({name: getattr(self, name).tolist() for name in self._INT_ARRAYS})
        data["types"] = [t.name for t in self.neuron_types()]
        data["summation"] = self._summation.tolist()
        return data

    def load_state(self, data: Dict[str, Any]) -> None:
        """Replace all neuron state; callers validate ``data`` beforehand."""
        n = self.num_neurons
        for name in self._ARRAYS:
            setattr(self, name, np.asarray(data[name], dtype=np.float64).reshape(n))
        for name in self._INT_ARRAYS:
            setattr(self, name, np.asarray(data[name], dtype=np.int64).reshape(n))
        self.type_codes = np.array([_TYPE_CODES[NeuronType[t]] for t in data["types"]], dtype=np.int8)
        self._summation = np.asarray(data["summation"], dtype=np.float64).reshape(n)
        self._created = True


NEURON_MODELS: Dict[str, Type[NeuronModel]] = {
    "lif": LIFNeuronBank,
}


def create_neuron_model(
    config: SimulationConfig,
    rng: np.random.Generator,
    name: Optional[str] = None,
) -> NeuronModel:
    """Instantiate the neuron model named by ``name`` or ``config.model``."""
    key = name or config.model
    model_cls = NEURON_MODELS.get(key)
    if model_cls is None:
        raise ConfigurationError(f"model: unknown neuron model {key!r}")
    return model_cls(config, rng)
