"""
SynapseBank: per-synapse state, delay queues and post-synaptic responses.

Synapses live in slot-indexed numpy arrays.  Removing a synapse returns its
slot to a free heap; the lowest free slot is reused first, so slot order
(and with it the order of summation-bin writes) is reproducible.

Spike transport:
    ``notify(source, tick)`` marks position ``(tick + delay) % width`` in the
    delay ring of every synapse leaving ``source``.  ``step(tick, bins)``
    consumes position ``tick % width``: on arrival ``psr += W / decay``; then,
    for every live synapse, ``psr *= decay`` and ``psr`` is added to the
    target neuron's summation bin.

Topology changes (``create_synapse`` / ``remove_synapse``) happen only at
epoch boundaries.  A synapse that still has a delivery in flight is not
removed; ``remove_synapse`` reports it as deferred.
"""

from __future__ import annotations

import heapq
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from neurogrowth_config import SYNAPSE_DELAY, SYNAPSE_TAU, delay_ticks
from neurogrowth_errors import CapacityError

logger = logging.getLogger("neurogrowth.synapses")


class SynapseType(Enum):
    """Synapse subtype named source-first: ``IE`` is inhibitory -> excitatory."""
    II = "II"
    IE = "IE"
    EI = "EI"
    EE = "EE"

    @property
    def sign(self) -> int:
        return -1 if self.value[0] == "I" else 1

    @classmethod
    def between(cls, src_inhibitory: bool, dst_inhibitory: bool) -> "SynapseType":
        return cls(("I" if src_inhibitory else "E") + ("I" if dst_inhibitory else "E"))


_SYN_CODES = {t: i for i, t in enumerate(SynapseType)}
_CODE_SYNS = {i: t for t, i in _SYN_CODES.items()}


@dataclass(frozen=True)
class Synapse:
    """Read-only snapshot of one synapse.

    Attributes:
        slot: Arena slot holding the synapse.
        source: Pre-synaptic neuron index.
        target: Post-synaptic neuron index.
        weight: Signed weight (negative for inhibitory sources).
        psr: Current post-synaptic response.
        decay: Per-tick PSR decay factor ``exp(-dt / tau)``.
        delay: Conduction delay in ticks.
        synapse_type: Subtype derived from source and target types.
    """

    slot: int
    source: int
    target: int
    weight: float
    psr: float
    decay: float
    delay: int
    synapse_type: SynapseType


class SynapseBank:
    """Arena of synapses with fixed-width boolean delay rings.

    Args:
        num_neurons: Size of the neuron pool.
        max_per_neuron: Cap on outgoing synapses per neuron.
        delta_t: Tick length in seconds.
        queue_width: Delay ring width; must exceed the longest delay.
        initial_capacity: Slots to allocate up front (grows by doubling).
    """

    def __init__(
        self,
        num_neurons: int,
        max_per_neuron: int,
        delta_t: float,
        queue_width: int = 32,
        initial_capacity: Optional[int] = None,
    ):
        self.num_neurons = num_neurons
        self.max_per_neuron = max_per_neuron
        self.delta_t = delta_t
        self.width = queue_width

        self._decay_by_type = {
            t: math.exp(-delta_t / SYNAPSE_TAU[t.value]) for t in SynapseType
        }
        self._delay_by_type = {
            t: delay_ticks(SYNAPSE_DELAY[t.value], delta_t) for t in SynapseType
        }
        longest = max(self._delay_by_type.values())
        if longest >= queue_width:
            raise ValueError(f"Delay queue width {queue_width} cannot hold a {longest}-tick delay")

        self._max_slots = num_neurons * max_per_neuron
        cap = initial_capacity or min(self._max_slots, max(16, 4 * num_neurons))
        self._allocate(max(1, min(cap, self._max_slots)))

        self._next_slot = 0
        self._free: List[int] = []
        self._pairs: Dict[Tuple[int, int], int] = {}
        self._outgoing: List[Dict[int, int]] = [dict() for _ in range(num_neurons)]
        self._live = np.zeros(0, dtype=np.int64)

    def _allocate(self, capacity: int) -> None:
        self.source = np.full(capacity, -1, dtype=np.int64)
        self.target = np.full(capacity, -1, dtype=np.int64)
        self.weight = np.zeros(capacity)
        self.psr = np.zeros(capacity)
        self.decay = np.zeros(capacity)
        self.delay = np.zeros(capacity, dtype=np.int64)
        self.type_codes = np.zeros(capacity, dtype=np.int8)
        self.in_use = np.zeros(capacity, dtype=bool)
        self.queue = np.zeros((capacity, self.width), dtype=bool)

    def _grow(self) -> None:
        old = len(self.in_use)
        new = min(self._max_slots, old * 2)
        for name in ("source", "target", "weight", "psr", "decay", "delay",
                     "type_codes", "in_use"):
            arr = getattr(self, name)
            fill = -1 if name in ("source", "target") else 0
            grown = np.full(new, fill, dtype=arr.dtype)
            grown[:old] = arr
            setattr(self, name, grown)
        queue = np.zeros((new, self.width), dtype=bool)
        queue[:old] = self.queue
        self.queue = queue
        logger.debug("Synapse arena grown from %d to %d slots", old, new)

    def _refresh_live(self) -> None:
        self._live = np.flatnonzero(self.in_use[:self._next_slot])

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, pair: Tuple[int, int]) -> bool:
        return pair in self._pairs

    def __repr__(self) -> str:
        return f"SynapseBank(synapses={len(self)}, slots={len(self.in_use)}, width={self.width})"

    def slot_of(self, src: int, dst: int) -> int:
        try:
            return self._pairs[(src, dst)]
        except KeyError:
            raise KeyError(f"Synapse {src}->{dst} not found") from None

    def outgoing_count(self, src: int) -> int:
        return len(self._outgoing[src])

    def pairs(self) -> List[Tuple[int, int]]:
        """Existing (source, target) pairs in canonical increasing order."""
        return sorted(self._pairs)

    def get(self, src: int, dst: int) -> Synapse:
        return self._snapshot(self.slot_of(src, dst))

    def _snapshot(self, slot: int) -> Synapse:
        return Synapse(
            slot=slot,
            source=int(self.source[slot]),
            target=int(self.target[slot]),
            weight=float(self.weight[slot]),
            psr=float(self.psr[slot]),
            decay=float(self.decay[slot]),
            delay=int(self.delay[slot]),
            synapse_type=_CODE_SYNS[int(self.type_codes[slot])],
        )

    def connectivity(self) -> List[Synapse]:
        """Snapshot of every synapse in canonical (source, target) order."""
        return [self._snapshot(self._pairs[pair]) for pair in self.pairs()]

    def weight_matrix(self) -> np.ndarray:
        """Dense ``[source, target]`` matrix of signed weights."""
        w = np.zeros((self.num_neurons, self.num_neurons))
        live = self._live
        w[self.source[live], self.target[live]] = self.weight[live]
        return w

    def has_pending(self, slot: int) -> bool:
        return bool(self.queue[slot].any())

    def pending_ticks(self, slot: int, tick: int) -> List[int]:
        """Future ticks (after ``tick``) at which ``slot`` will deliver."""
        now = tick % self.width
        return sorted(
            tick + ((int(pos) - now) % self.width or self.width)
            for pos in np.flatnonzero(self.queue[slot])
        )

    # -----------------------------------------------------------------------
    # Topology (epoch boundaries only)
    # -----------------------------------------------------------------------

    def create_synapse(self, src: int, dst: int, magnitude: float,
                       synapse_type: SynapseType) -> int:
        """Create ``src -> dst`` with weight ``sign * |magnitude|``.

        Returns:
            The slot index.

        Raises:
            KeyError: unknown neuron index.
            ValueError: self-connection or duplicate pair.
            CapacityError: ``src`` already has ``max_per_neuron`` synapses.
        """
        for idx in (src, dst):
            if not 0 <= idx < self.num_neurons:
                raise KeyError(f"Neuron {idx} not found")
        if src == dst:
            raise ValueError("Self-connections not allowed")
        if (src, dst) in self._pairs:
            raise ValueError(f"Synapse {src}->{dst} already exists")
        if len(self._outgoing[src]) >= self.max_per_neuron:
            raise CapacityError(src, self.max_per_neuron)

        if self._free:
            slot = heapq.heappop(self._free)
        else:
            if self._next_slot >= len(self.in_use):
                self._grow()
            slot = self._next_slot
            self._next_slot += 1

        self.source[slot] = src
        self.target[slot] = dst
        self.weight[slot] = synapse_type.sign * abs(magnitude)
        self.psr[slot] = 0.0
        self.decay[slot] = self._decay_by_type[synapse_type]
        self.delay[slot] = self._delay_by_type[synapse_type]
        self.type_codes[slot] = _SYN_CODES[synapse_type]
        self.in_use[slot] = True
        self.queue[slot] = False

        self._pairs[(src, dst)] = slot
        self._outgoing[src][dst] = slot
        self._refresh_live()
        return slot

    def remove_synapse(self, src: int, dst: int) -> bool:
        """Remove ``src -> dst``.

        Returns:
            True if removed, False if deferred because a delivery is still
            pending in the delay ring.
        """
        slot = self.slot_of(src, dst)
        if self.has_pending(slot):
            return False

        self.in_use[slot] = False
        self.source[slot] = -1
        self.target[slot] = -1
        self.weight[slot] = 0.0
        self.psr[slot] = 0.0
        self.decay[slot] = 0.0
        del self._pairs[(src, dst)]
        del self._outgoing[src][dst]
        heapq.heappush(self._free, slot)
        self._refresh_live()
        return True

    def set_weight(self, src: int, dst: int, magnitude: float) -> None:
        """Update the weight magnitude, keeping the sign fixed at creation."""
        slot = self.slot_of(src, dst)
        sign = _CODE_SYNS[int(self.type_codes[slot])].sign
        self.weight[slot] = sign * abs(magnitude)

    # -----------------------------------------------------------------------
    # Simulation
    # -----------------------------------------------------------------------

    def notify(self, src: int, tick: int) -> None:
        """Schedule delivery on every synapse leaving ``src``."""
        for slot in self._outgoing[src].values():
            self.queue[slot, (tick + self.delay[slot]) % self.width] = True

    def step(self, tick: int, bins: np.ndarray) -> np.ndarray:
        """Consume this tick's ring position and integrate PSRs into ``bins``.

        Returns:
            Slots that received a spike this tick.
        """
        live = self._live
        if live.size == 0:
            return live
        pos = tick % self.width
        hits = live[self.queue[live, pos]]
        if hits.size:
            self.queue[hits, pos] = False
            self.psr[hits] += self.weight[hits] / self.decay[hits]
        self.psr[live] *= self.decay[live]
        np.add.at(bins, self.target[live], self.psr[live])
        return hits

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def save_state(self) -> Dict[str, Any]:
        live = self._live
        return {
            "capacity": int(len(self.in_use)),
            "next_slot": self._next_slot,
            "free": sorted(self._free),
            "slots": live.tolist(),
            "source": self.source[live].tolist(),
            "target": self.target[live].tolist(),
            "weight": self.weight[live].tolist(),
            "psr": self.psr[live].tolist(),
            "decay": self.decay[live].tolist(),
            "delay": self.delay[live].tolist(),
            "types": [_CODE_SYNS[int(c)].value for c in self.type_codes[live]],
            "pending": [np.flatnonzero(self.queue[s]).tolist() for s in live],
        }

    def load_state(self, data: Dict[str, Any]) -> None:
        """Replace every synapse; callers validate ``data`` beforehand."""
        self._allocate(max(1, int(data["capacity"])))
        self._next_slot = int(data["next_slot"])
        self._free = [int(s) for s in data["free"]]
        heapq.heapify(self._free)
        self._pairs = {}
        self._outgoing = [dict() for _ in range(self.num_neurons)]

        for i, slot in enumerate(data["slots"]):
            src, dst = int(data["source"][i]), int(data["target"][i])
            self.source[slot] = src
            self.target[slot] = dst
            self.weight[slot] = float(data["weight"][i])
            self.psr[slot] = float(data["psr"][i])
            self.decay[slot] = float(data["decay"][i])
            self.delay[slot] = int(data["delay"][i])
            self.type_codes[slot] = _SYN_CODES[SynapseType(data["types"][i])]
            self.in_use[slot] = True
            self.queue[slot, [int(p) for p in data["pending"][i]]] = True
            self._pairs[(src, dst)] = slot
            self._outgoing[src][dst] = slot
        self._refresh_live()
