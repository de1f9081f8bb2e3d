"""
StateCodec: checkpoint payloads and the final-state report.

A checkpoint captures everything needed to continue a run bit-for-bit:
configuration, clock, scheduler state, random generator state, neuron
arrays (including summation bins), live synapses with their slots and
pending delay-ring positions, and the growth state with its append-only
histories.  Checkpoints are only taken at epoch boundaries.

Files ending in ``.msgpack`` are written with msgpack, anything else as
JSON.  ``validate_payload`` checks a payload completely before anything is
applied, so a rejected checkpoint never leaves partial state behind.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import msgpack
import numpy as np

from neurogrowth_config import SimulationConfig, load_config
from neurogrowth_errors import CheckpointError, ConfigurationError

logger = logging.getLogger("neurogrowth.codec")

CHECKPOINT_VERSION = "1.0"

_NEURON_FLOAT_KEYS = (
    "vm", "v_thresh", "v_resting", "v_reset", "v_init", "i_inject",
    "i_noise", "rm", "cm", "c1", "c2", "summation",
)
_NEURON_INT_KEYS = ("refractory_period", "refractory_remaining", "spike_count", "total_spikes")
_SYNAPSE_KEYS = ("slots", "source", "target", "weight", "psr", "decay", "delay", "types", "pending")
_GROWTH_ROW_KEYS = ("radii", "rates", "outgrowth", "delta_r")
_GROWTH_HISTORY_KEYS = ("radii_history", "rates_history", "outgrowth_history", "delta_r_history")


# ---------------------------------------------------------------------------
# File framing
# ---------------------------------------------------------------------------

def write_payload(data: Dict[str, Any], path: str) -> None:
    """Write a payload; the extension selects msgpack or JSON."""
    if str(path).endswith(".msgpack"):
        with open(path, "wb") as f:
            msgpack.pack(data, f, use_bin_type=True)
    else:
        with open(path, "w") as f:
            json.dump(data, f, indent=2)


def read_payload(path: str) -> Dict[str, Any]:
    """Read a payload written by ``write_payload``.

    Raises:
        CheckpointError: missing file or undecodable content.
    """
    try:
        if str(path).endswith(".msgpack"):
            with open(path, "rb") as f:
                data = msgpack.unpack(f, raw=False)
        else:
            with open(path, "r") as f:
                data = json.load(f)
    except OSError as exc:
        raise CheckpointError(f"cannot read checkpoint: {exc}", str(path)) from exc
    except (ValueError, msgpack.UnpackException) as exc:
        raise CheckpointError(f"undecodable checkpoint: {exc}", str(path)) from exc
    if not isinstance(data, dict):
        raise CheckpointError("checkpoint root must be a mapping", str(path))
    return data


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_rng(rng: np.random.Generator) -> str:
    """Bit generator state as a JSON string (its integers exceed 64 bits)."""
    return json.dumps(rng.bit_generator.state)


def decode_rng(rng: np.random.Generator, encoded: str) -> None:
    rng.bit_generator.state = json.loads(encoded)


def encode_scheduler(sched: Any) -> Dict[str, Any]:
    """Full checkpoint payload for an ``EpochScheduler``."""
    return {
        "version": CHECKPOINT_VERSION,
        "config": sched.config.to_dict(),
        "clock": {"tick": sched.clock.tick, "epoch": sched.clock.epoch},
        "scheduler_state": sched.state.name,
        "rng": encode_rng(sched.rng),
        "neurons": sched.neurons.save_state(),
        "synapses": sched.synapses.save_state(),
        "growth": sched.growth.save_state(),
    }


# ---------------------------------------------------------------------------
# Validation and decoding
# ---------------------------------------------------------------------------

def _require(cond: bool, message: str, path: Optional[str]) -> None:
    if not cond:
        raise CheckpointError(message, path)


def _check_vector(section: Dict[str, Any], key: str, n: int, path: Optional[str]) -> None:
    value = section.get(key)
    _require(isinstance(value, list), f"{key}: expected a list", path)
    _require(len(value) == n, f"{key}: expected {n} entries, found {len(value)}", path)


def _is_number(value: Any, integer: bool = False) -> bool:
    if isinstance(value, bool):
        return False
    if integer:
        return isinstance(value, int)
    return isinstance(value, (int, float)) and math.isfinite(value)


def _check_numbers(values: List[Any], key: str, path: Optional[str], integer: bool = False) -> None:
    kind = "integers" if integer else "finite numbers"
    _require(all(_is_number(v, integer) for v in values), f"{key}: entries must be {kind}", path)


def validate_payload(data: Dict[str, Any], path: Optional[str] = None) -> SimulationConfig:
    """Check a decoded payload and return its configuration.

    Raises:
        CheckpointError: on any version mismatch or structural problem.
    """
    version = data.get("version")
    _require(version == CHECKPOINT_VERSION,
             f"version mismatch: checkpoint has {version!r}, expected {CHECKPOINT_VERSION!r}", path)
    for key in ("config", "clock", "scheduler_state", "rng", "neurons", "synapses", "growth"):
        _require(key in data, f"missing section {key!r}", path)

    try:
        config = load_config(data["config"])
    except ConfigurationError as exc:
        raise CheckpointError(f"invalid configuration: {exc}", path) from exc

    n = config.num_neurons
    tpe = config.ticks_per_epoch
    try:
        clock = data["clock"]
        tick, epoch = clock["tick"], clock["epoch"]
        _require(isinstance(tick, int) and isinstance(epoch, int), "clock: tick and epoch must be integers", path)
        _require(0 <= epoch <= config.sim_params.num_epochs,
                 f"clock: epoch {epoch} outside 0..{config.sim_params.num_epochs}", path)
        _require(tick == epoch * tpe, f"clock: tick {tick} is not the boundary of epoch {epoch}", path)

        expected_state = "IDLE" if epoch == 0 else (
            "FINISHED" if epoch == config.sim_params.num_epochs else "RUNNING")
        _require(data["scheduler_state"] == expected_state,
                 f"scheduler_state {data['scheduler_state']!r} inconsistent with epoch {epoch}", path)

        rng_state = json.loads(data["rng"])
        _require(isinstance(rng_state, dict) and rng_state.get("bit_generator") == "PCG64",
                 "rng: expected a PCG64 bit generator state", path)
        np.random.PCG64().state = rng_state

        neurons = data["neurons"]
        for key in _NEURON_FLOAT_KEYS + _NEURON_INT_KEYS + ("types",):
            _check_vector(neurons, key, n, path)
        for key in _NEURON_FLOAT_KEYS:
            _check_numbers(neurons[key], f"neurons.{key}", path)
        for key in _NEURON_INT_KEYS:
            _check_numbers(neurons[key], f"neurons.{key}", path, integer=True)
        for t in neurons["types"]:
            _require(t in ("EXCITATORY", "INHIBITORY", "ENDOGENOUSLY_ACTIVE"),
                     f"neurons: unknown neuron type {t!r}", path)

        syn = data["synapses"]
        slots = syn.get("slots")
        _require(isinstance(slots, list), "synapses: slots must be a list", path)
        for key in _SYNAPSE_KEYS:
            _check_vector(syn, key, len(slots), path)
        for key in ("weight", "psr", "decay"):
            _check_numbers(syn[key], f"synapses.{key}", path)
        for key in ("source", "target", "delay"):
            _check_numbers(syn[key], f"synapses.{key}", path, integer=True)
        _require(all(isinstance(p, list) for p in syn["pending"]),
                 "synapses: pending entries must be lists", path)
        for p in syn["pending"]:
            _check_numbers(p, "synapses.pending", path, integer=True)
        capacity, next_slot, free = syn.get("capacity"), syn.get("next_slot"), syn.get("free")
        _require(isinstance(capacity, int) and isinstance(next_slot, int) and 0 <= next_slot <= capacity,
                 "synapses: inconsistent capacity/next_slot", path)
        _require(isinstance(free, list), "synapses: free must be a list", path)
        used = set(slots)
        _require(len(used) == len(slots), "synapses: duplicate slots", path)
        _require(all(isinstance(s, int) and 0 <= s < next_slot for s in slots + free),
                 "synapses: slot index out of range", path)
        _require(not used & set(free), "synapses: slot both live and free", path)
        width = config.sim_params.delay_queue_width
        pairs = set()
        for i in range(len(slots)):
            src, dst = syn["source"][i], syn["target"][i]
            _require(0 <= src < n and 0 <= dst < n and src != dst,
                     f"synapses: invalid pair {src}->{dst}", path)
            pairs.add((src, dst))
            _require(syn["types"][i] in ("II", "IE", "EI", "EE"),
                     f"synapses: unknown synapse type {syn['types'][i]!r}", path)
            _require(all(0 <= p < width for p in syn["pending"][i]),
                     "synapses: pending delay position out of range", path)
        _require(len(pairs) == len(slots), "synapses: duplicate (source, target) pair", path)

        growth = data["growth"]
        for key in _GROWTH_ROW_KEYS:
            _check_vector(growth, key, n, path)
            _check_numbers(growth[key], f"growth.{key}", path)
        for key in _GROWTH_HISTORY_KEYS:
            rows = growth.get(key)
            _require(isinstance(rows, list) and len(rows) == epoch,
                     f"growth: {key} must hold one row per completed epoch ({epoch})", path)
            _require(all(isinstance(r, list) and len(r) == n for r in rows),
                     f"growth: {key} rows must have {n} entries", path)
            for row in rows:
                _check_numbers(row, f"growth.{key}", path)
        for key in ("burstiness_hist", "spikes_history"):
            _require(isinstance(growth.get(key), list), f"growth: {key} must be a list", path)
            _check_numbers(growth[key], f"growth.{key}", path, integer=True)
    except CheckpointError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise CheckpointError(f"malformed checkpoint: {exc!r}", path) from exc

    return config


def apply_payload(sched: Any, data: Dict[str, Any]) -> None:
    """Load a validated payload into a freshly built scheduler (state excluded)."""
    decode_rng(sched.rng, data["rng"])
    sched.neurons.load_state(data["neurons"])
    sched.synapses.load_state(data["synapses"])
    sched.growth.load_state(data["growth"])
    sched.clock.tick = data["clock"]["tick"]
    sched.clock.epoch = data["clock"]["epoch"]


# ---------------------------------------------------------------------------
# Final-state report
# ---------------------------------------------------------------------------

def build_final_report(sched: Any) -> Dict[str, Any]:
    """Summary of a run: time, growth histories and connectivity."""
    st = sched.growth.state
    neurons = sched.neurons
    connectivity: List[Dict[str, Any]] = [
        {
            "source": s.source,
            "target": s.target,
            "weight": s.weight,
            "type": s.synapse_type.value,
        }
        for s in sched.synapses.connectivity()
    ]
    return {
        "simulation_end_time": sched.clock.time,
        "epoch_duration": sched.config.sim_params.epoch_duration,
        "epochs_completed": sched.clock.epoch,
        "radii_history": st.radii_history.tolist(),
        "rates_history": st.rates_history.tolist(),
        "outgrowth_history": st.outgrowth_history.tolist(),
        "burstiness_hist": list(st.burstiness_hist),
        "spikes_history": list(st.spikes_history),
        "xloc": sched.grid.xloc.tolist(),
        "yloc": sched.grid.yloc.tolist(),
        "neuron_types": [t.name for t in neurons.neuron_types()],
        "starter_neurons": np.flatnonzero(neurons.starter_mask()).tolist(),
        "neuron_thresholds": neurons.thresholds().tolist(),
        "connectivity": connectivity,
    }


def write_final_report(sched: Any, path: str) -> None:
    """Write ``build_final_report`` as JSON."""
    report = build_final_report(sched)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(report, f, indent=2)
    logger.info("Final-state report written to %s", path)
