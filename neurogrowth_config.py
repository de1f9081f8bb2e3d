"""
NeuroGrowth Configuration: structured parameters for one simulation run.

A ``SimulationConfig`` groups the pool geometry, neuron parameter ranges,
growth law parameters, epoch/tick timing and monitoring settings.  It can be
built from a dict of overrides, a JSON file, or both, layered over
``DEFAULT_CONFIG``.

Unlike a best-effort settings loader, loading here is fail-fast: every
missing or malformed field is collected and reported together in a single
``ConfigurationError`` before any simulation object is created.

Usage::

    from neurogrowth_config import load_config

    cfg = load_config({
        "pool_size": {"x": 10, "y": 10},
        "sim_params": {"epoch_duration": 1.0, "num_epochs": 5,
                       "max_firing_rate": 200, "max_synapses_per_neuron": 200},
        "seed": 777,
    })
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from neurogrowth_errors import ConfigurationError

logger = logging.getLogger("neurogrowth.config")

Range = Tuple[float, float]

# Neuron model implementations known to neuron_bank.NEURON_MODELS
SUPPORTED_MODELS = ("lif",)

# Synapse subtype constants (source type first): PSR time constant and
# conduction delay, both in seconds.
SYNAPSE_TAU: Dict[str, float] = {"II": 6e-3, "IE": 6e-3, "EI": 3e-3, "EE": 3e-3}
SYNAPSE_DELAY: Dict[str, float] = {"II": 0.8e-3, "IE": 0.8e-3, "EI": 0.8e-3, "EE": 1.5e-3}

# Relative tolerance when checking epoch_duration / delta_t is integral
TICK_TOLERANCE = 1e-6


def delay_ticks(delay: float, delta_t: float) -> int:
    """Conduction delay in ticks; always at least one tick."""
    return int(math.floor(delay / delta_t + 1e-9)) + 1


# ── Section dataclasses ────────────────────────────────────────────────


@dataclass
class PoolConfig:
    """Neuron pool dimensions; ``z`` > 1 makes a 3-D grid."""

    x: int = 0
    y: int = 0
    z: int = 1

    @property
    def num_neurons(self) -> int:
        return self.x * self.y * self.z


@dataclass
class FractionsConfig:
    """Fractions of excitatory and endogenously active (starter) neurons."""

    excitatory: float = 0.98
    starter: float = 0.1


@dataclass
class NeuronParams:
    """LIF neuron parameters.

    Ranges are ``(low, high)``; each neuron draws uniformly from them.
    Currents are in amperes, voltages in volts, times in seconds.
    """

    i_inject: Range = (13.5e-9, 13.5e-9)
    i_noise: Range = (1.0e-9, 1.5e-9)
    v_thresh: Range = (15.0e-3, 15.0e-3)
    v_resting: Range = (0.0, 0.0)
    v_reset: Range = (13.5e-3, 13.5e-3)
    v_init: Range = (13.0e-3, 13.0e-3)
    starter_v_thresh: Range = (13.565e-3, 13.655e-3)
    starter_v_reset: Range = (13.0e-3, 13.0e-3)
    cm: float = 3e-8
    rm: float = 1e6
    t_refract: float = 3e-3


@dataclass
class GrowthParams:
    """Activity-dependent outgrowth parameters.

    ``max_rate`` is derived as ``target_rate / epsilon``.  When
    ``apply_rho`` is set the radius change is ``rho * epoch_duration *
    outgrowth``; otherwise the raw outgrowth is used.
    """

    epsilon: float = 0.6
    beta: float = 0.1
    rho: float = 0.0001
    target_rate: float = 1.9
    min_radius: float = 0.1
    start_radius: float = 0.4
    synapse_strength_adjustment: float = 1.0e-8
    min_overlap_area: float = 0.0
    apply_rho: bool = False

    @property
    def max_rate(self) -> float:
        return self.target_rate / self.epsilon


@dataclass
class SimParams:
    """Epoch timing and synapse limits."""

    epoch_duration: float = 0.0
    num_epochs: int = 0
    max_firing_rate: int = 0
    max_synapses_per_neuron: int = 0
    delta_t: float = 1e-4
    delay_queue_width: int = 32

    @property
    def ticks_per_epoch(self) -> int:
        return int(round(self.epoch_duration / self.delta_t))


@dataclass
class LayoutConfig:
    """Explicit neuron indices for a fixed (non-random) layout."""

    endogenously_active: List[int] = field(default_factory=list)
    inhibitory: List[int] = field(default_factory=list)


@dataclass
class MonitoringConfig:
    """Logging settings for the growth event log."""

    log_dir: str = "~/.neurogrowth/logs/"
    max_log_size_mb: int = 10
    backup_count: int = 5
    progress_interval: int = 10000


# ── Top-level config ───────────────────────────────────────────────────


@dataclass
class SimulationConfig:
    """Complete, validated parameter set for one simulation."""

    pool_size: PoolConfig = field(default_factory=PoolConfig)
    fractions: FractionsConfig = field(default_factory=FractionsConfig)
    neuron_params: NeuronParams = field(default_factory=NeuronParams)
    growth_params: GrowthParams = field(default_factory=GrowthParams)
    sim_params: SimParams = field(default_factory=SimParams)
    layout: Optional[LayoutConfig] = None
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    seed: int = 0
    model: str = "lif"

    @property
    def num_neurons(self) -> int:
        return self.pool_size.num_neurons

    @property
    def ticks_per_epoch(self) -> int:
        return self.sim_params.ticks_per_epoch

    def to_dict(self) -> Dict[str, Any]:
        """Plain nested dict (JSON/msgpack friendly) accepted by ``load_config``."""
        data = dataclasses.asdict(self)
        for key, value in data["neuron_params"].items():
            if isinstance(value, tuple):
                data["neuron_params"][key] = list(value)
        return data


# Defaults (original LIF model values).  Required fields are absent here.
DEFAULT_CONFIG: Dict[str, Any] = {
    "model": "lif",
    "pool_size": {"z": 1},
    "fractions": {"excitatory": 0.98, "starter": 0.1},
    "neuron_params": dataclasses.asdict(NeuronParams()),
    "growth_params": dataclasses.asdict(GrowthParams()),
    "sim_params": {"delta_t": 1e-4, "delay_queue_width": 32},
    "layout": None,
    "monitoring": dataclasses.asdict(MonitoringConfig()),
}

REQUIRED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("pool_size", "x"),
    ("pool_size", "y"),
    ("sim_params", "epoch_duration"),
    ("sim_params", "num_epochs"),
    ("sim_params", "max_firing_rate"),
    ("sim_params", "max_synapses_per_neuron"),
)


# ── Loading ────────────────────────────────────────────────────────────


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated recursively with ``overrides``."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class _Parser:
    """Collects every problem found while converting raw data to dataclasses."""

    def __init__(self, data: Dict[str, Any]):
        self.data = data
        self.errors: List[str] = []

    def section(self, name: str) -> Dict[str, Any]:
        value = self.data.get(name)
        if value is None:
            return {}
        if not isinstance(value, dict):
            message = f"{name}: expected a mapping, got {type(value).__name__}"
            if message not in self.errors:
                self.errors.append(message)
            return {}
        return value

    def number(self, section: str, key: str, *, integer: bool = False,
               positive: bool = False, non_negative: bool = False,
               unit_interval: bool = False) -> Any:
        raw = self.section(section).get(key)
        where = f"{section}.{key}"
        if raw is None:
            if (section, key) in REQUIRED_FIELDS:
                self.errors.append(f"{where}: missing required field")
            else:
                self.errors.append(f"{where}: missing value")
            return None
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            self.errors.append(f"{where}: expected a number, got {raw!r}")
            return None
        if integer:
            if isinstance(raw, float) and not raw.is_integer():
                self.errors.append(f"{where}: expected an integer, got {raw!r}")
                return None
            value: Any = int(raw)
        else:
            value = float(raw)
            if not math.isfinite(value):
                self.errors.append(f"{where}: must be finite, got {raw!r}")
                return None
        if positive and value <= 0:
            self.errors.append(f"{where}: must be > 0, got {raw!r}")
        elif non_negative and value < 0:
            self.errors.append(f"{where}: must be >= 0, got {raw!r}")
        elif unit_interval and not 0.0 <= value <= 1.0:
            self.errors.append(f"{where}: must be within [0, 1], got {raw!r}")
        return value

    def value_range(self, section: str, key: str) -> Optional[Range]:
        raw = self.section(section).get(key)
        where = f"{section}.{key}"
        if raw is None:
            self.errors.append(f"{where}: missing range")
            return None
        if not isinstance(raw, (list, tuple)) or len(raw) != 2:
            self.errors.append(f"{where}: expected [low, high], got {raw!r}")
            return None
        low, high = raw
        if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in (low, high)):
            self.errors.append(f"{where}: range bounds must be numbers, got {raw!r}")
            return None
        if low > high:
            self.errors.append(f"{where}: low bound {low!r} exceeds high bound {high!r}")
            return None
        return (float(low), float(high))

    def flag(self, section: str, key: str) -> bool:
        raw = self.section(section).get(key, False)
        if not isinstance(raw, bool):
            self.errors.append(f"{section}.{key}: expected true/false, got {raw!r}")
            return False
        return raw

    def index_list(self, key: str, num_neurons: Optional[int]) -> List[int]:
        raw = self.section("layout").get(key, [])
        where = f"layout.{key}"
        if not isinstance(raw, (list, tuple)):
            self.errors.append(f"{where}: expected a list of neuron indices, got {raw!r}")
            return []
        indices: List[int] = []
        for item in raw:
            if isinstance(item, bool) or not isinstance(item, int):
                self.errors.append(f"{where}: neuron index {item!r} is not an integer")
                continue
            if num_neurons is not None and not 0 <= item < num_neurons:
                self.errors.append(f"{where}: neuron index {item} outside pool of {num_neurons}")
                continue
            indices.append(item)
        if len(set(indices)) != len(indices):
            self.errors.append(f"{where}: duplicate neuron indices")
        return sorted(set(indices))


def _parse(data: Dict[str, Any]) -> SimulationConfig:
    p = _Parser(data)

    pool = PoolConfig(
        x=p.number("pool_size", "x", integer=True, positive=True),
        y=p.number("pool_size", "y", integer=True, positive=True),
        z=p.number("pool_size", "z", integer=True, positive=True),
    )
    num_neurons = None
    if None not in (pool.x, pool.y, pool.z) and min(pool.x, pool.y, pool.z) > 0:
        num_neurons = pool.num_neurons

    fractions = FractionsConfig(
        excitatory=p.number("fractions", "excitatory", unit_interval=True),
        starter=p.number("fractions", "starter", unit_interval=True),
    )

    neuron_kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(NeuronParams):
        if f.name in ("cm", "rm", "t_refract"):
            neuron_kwargs[f.name] = p.number("neuron_params", f.name, positive=True)
        else:
            neuron_kwargs[f.name] = p.value_range("neuron_params", f.name)
    neuron = NeuronParams(**neuron_kwargs)
    i_noise = neuron.i_noise
    if i_noise is not None and i_noise[0] < 0:
        p.errors.append("neuron_params.i_noise: noise amplitude must be >= 0")

    growth = GrowthParams(
        epsilon=p.number("growth_params", "epsilon", positive=True),
        beta=p.number("growth_params", "beta", positive=True),
        rho=p.number("growth_params", "rho", non_negative=True),
        target_rate=p.number("growth_params", "target_rate", positive=True),
        min_radius=p.number("growth_params", "min_radius", non_negative=True),
        start_radius=p.number("growth_params", "start_radius", non_negative=True),
        synapse_strength_adjustment=p.number(
            "growth_params", "synapse_strength_adjustment", positive=True),
        min_overlap_area=p.number("growth_params", "min_overlap_area", non_negative=True),
        apply_rho=p.flag("growth_params", "apply_rho"),
    )

    sim = SimParams(
        epoch_duration=p.number("sim_params", "epoch_duration", positive=True),
        num_epochs=p.number("sim_params", "num_epochs", integer=True, positive=True),
        max_firing_rate=p.number("sim_params", "max_firing_rate", integer=True, positive=True),
        max_synapses_per_neuron=p.number(
            "sim_params", "max_synapses_per_neuron", integer=True, positive=True),
        delta_t=p.number("sim_params", "delta_t", positive=True),
        delay_queue_width=p.number("sim_params", "delay_queue_width", integer=True, positive=True),
    )
    if sim.epoch_duration and sim.delta_t and sim.epoch_duration > 0 and sim.delta_t > 0:
        ratio = sim.epoch_duration / sim.delta_t
        if abs(ratio - round(ratio)) > TICK_TOLERANCE * max(1.0, ratio) or round(ratio) < 1:
            p.errors.append(
                f"sim_params: epoch_duration {sim.epoch_duration!r} is not an integral "
                f"number of delta_t {sim.delta_t!r} ticks"
            )
        if sim.delay_queue_width and sim.delay_queue_width > 0:
            longest = max(delay_ticks(d, sim.delta_t) for d in SYNAPSE_DELAY.values())
            if longest >= sim.delay_queue_width:
                p.errors.append(
                    f"sim_params.delay_queue_width: {sim.delay_queue_width} cannot hold a "
                    f"{longest}-tick synaptic delay"
                )

    layout = None
    if data.get("layout") is not None and not isinstance(data["layout"], dict):
        p.section("layout")
    elif data.get("layout") is not None:
        layout = LayoutConfig(
            endogenously_active=p.index_list("endogenously_active", num_neurons),
            inhibitory=p.index_list("inhibitory", num_neurons),
        )
        overlap = set(layout.endogenously_active) & set(layout.inhibitory)
        if overlap:
            p.errors.append(
                f"layout: neurons {sorted(overlap)} are listed as both inhibitory "
                f"and endogenously active"
            )

    monitoring = MonitoringConfig(
        log_dir=str(p.section("monitoring").get("log_dir", MonitoringConfig.log_dir)),
        max_log_size_mb=p.number("monitoring", "max_log_size_mb", integer=True, positive=True),
        backup_count=p.number("monitoring", "backup_count", integer=True, non_negative=True),
        progress_interval=p.number("monitoring", "progress_interval", integer=True, positive=True),
    )

    seed = data.get("seed")
    if seed is None:
        p.errors.append("seed: missing required field")
    elif isinstance(seed, bool) or not isinstance(seed, int):
        p.errors.append(f"seed: expected an integer, got {seed!r}")
    elif seed < 0:
        p.errors.append(f"seed: must be >= 0, got {seed!r}")

    model = data.get("model", "lif")
    if model not in SUPPORTED_MODELS:
        p.errors.append(f"model: unknown neuron model {model!r} (supported: {', '.join(SUPPORTED_MODELS)})")

    if p.errors:
        raise ConfigurationError(p.errors)

    return SimulationConfig(
        pool_size=pool,
        fractions=fractions,
        neuron_params=neuron,
        growth_params=growth,
        sim_params=sim,
        layout=layout,
        monitoring=monitoring,
        seed=seed,
        model=model,
    )


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
) -> SimulationConfig:
    """Create a validated ``SimulationConfig``.

    Precedence (highest wins):
        1. ``overrides`` dict argument
        2. ``config_path`` JSON file
        3. ``DEFAULT_CONFIG``

    Raises:
        ConfigurationError: listing every missing or malformed field.
    """
    data = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        path = Path(config_path).expanduser()
        try:
            with open(path) as f:
                file_data = json.load(f)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"cannot read configuration file {path}: {exc}") from exc
        if not isinstance(file_data, dict):
            raise ConfigurationError(f"configuration file {path} must hold a JSON object")
        data = _deep_merge(data, file_data)
        logger.debug("Loaded configuration file %s", path)

    if overrides is not None:
        data = _deep_merge(data, overrides)

    cfg = _parse(data)
    logger.info(
        "Configuration: %d neurons (%dx%dx%d), %d epochs of %d ticks, seed %d",
        cfg.num_neurons, cfg.pool_size.x, cfg.pool_size.y, cfg.pool_size.z,
        cfg.sim_params.num_epochs, cfg.ticks_per_epoch, cfg.seed,
    )
    return cfg
