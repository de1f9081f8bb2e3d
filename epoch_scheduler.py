"""
EpochScheduler: drives the tick loop and the epoch-boundary growth update.

State machine::

    IDLE --run_epoch--> RUNNING (epoch 1..N-1) --run_epoch--> ... --> FINISHED

Each epoch advances exactly ``ticks_per_epoch`` ticks.  For every tick the
neuron pass runs first (reading and clearing the summation bins, firing,
notifying synapses) and the synapse pass second (delivering due spikes and
writing PSRs into the bins for the next tick).  After the last tick the
growth engine runs once.  Once FINISHED, stepping raises ``LifecycleError``.

All randomness comes from one ``numpy.random.Generator`` seeded from the
configuration and owned by the scheduler, so a run is fully determined by
its configuration.

Usage::

    from neurogrowth_config import load_config
    from epoch_scheduler import EpochScheduler

    sched = EpochScheduler(load_config(overrides))
    sched.run()
    report = sched.final_report()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

import numpy as np

import state_codec
from connection_growth import ConnectionGrowthEngine, GrowthReport
from neurogrowth_config import SimulationConfig
from neurogrowth_errors import LifecycleError
from neuron_bank import NeuronModel, create_neuron_model
from spatial_grid import SpatialGrid
from synapse_bank import SynapseBank

logger = logging.getLogger("neurogrowth.scheduler")


class SchedulerState(Enum):
    IDLE = auto()
    RUNNING = auto()
    FINISHED = auto()


@dataclass
class SimulationClock:
    """Tick counter on a fixed integer grid.

    Attributes:
        ticks_per_epoch: Ticks in one epoch.
        delta_t: Tick length in seconds.
        tick: Ticks completed so far.
        epoch: Epochs completed so far.
    """

    ticks_per_epoch: int
    delta_t: float
    tick: int = 0
    epoch: int = 0

    @property
    def time(self) -> float:
        """Simulated seconds elapsed."""
        return self.tick * self.delta_t

    def epoch_start_tick(self, epoch: int) -> int:
        """First tick of ``epoch`` (1-based)."""
        return (epoch - 1) * self.ticks_per_epoch

    def advance(self) -> None:
        self.tick += 1


class EpochScheduler:
    """Builds the network from a configuration and runs it epoch by epoch.

    Args:
        config: Validated simulation configuration.
    """

    def __init__(self, config: SimulationConfig):
        self.config = config
        sim = config.sim_params

        self.rng = np.random.default_rng(config.seed)
        self.grid = SpatialGrid(config.pool_size.x, config.pool_size.y, config.pool_size.z)
        self.neurons: NeuronModel = create_neuron_model(config, self.rng)
        self.neurons.create_all_neurons(self.grid)
        self.synapses = SynapseBank(
            num_neurons=config.num_neurons,
            max_per_neuron=sim.max_synapses_per_neuron,
            delta_t=sim.delta_t,
            queue_width=sim.delay_queue_width,
        )
        self.growth = ConnectionGrowthEngine(
            config.growth_params,
            self.grid,
            epoch_duration=sim.epoch_duration,
            delta_t=sim.delta_t,
            max_firing_rate=sim.max_firing_rate,
        )
        self.clock = SimulationClock(ticks_per_epoch=config.ticks_per_epoch, delta_t=sim.delta_t)
        self.state = SchedulerState.IDLE
        self.reports: List[GrowthReport] = []

        self._event_handlers: Dict[str, List[Callable]] = {}
        self._progress_interval = config.monitoring.progress_interval

        self.initial_report = self.growth.connect_initial(self.neurons, self.synapses)

    def __repr__(self) -> str:
        return (
            f"EpochScheduler(state={self.state.name}, epoch={self.clock.epoch}/"
            f"{self.num_epochs}, tick={self.clock.tick})"
        )

    @property
    def num_epochs(self) -> int:
        return self.config.sim_params.num_epochs

    @property
    def epochs_remaining(self) -> int:
        return self.num_epochs - self.clock.epoch

    # -----------------------------------------------------------------------
    # Event System
    # -----------------------------------------------------------------------

    def register_event_handler(self, event_type: str, callback: Callable) -> None:
        """Subscribe to ``epoch_complete``, ``growth`` or ``finished`` events."""
        self._event_handlers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs: Any) -> None:
        for cb in self._event_handlers.get(event_type, []):
            cb(**kwargs)

    # -----------------------------------------------------------------------
    # Simulation Loop
    # -----------------------------------------------------------------------

    def run_epoch(self) -> GrowthReport:
        """Simulate one epoch and apply the growth update.

        Raises:
            LifecycleError: the scheduler is already FINISHED.
        """
        if self.state is SchedulerState.FINISHED:
            raise LifecycleError(self.state.name, "run an epoch")
        self.state = SchedulerState.RUNNING

        epoch = self.clock.epoch + 1
        start = self.clock.epoch_start_tick(epoch)
        if self.clock.tick != start:
            raise LifecycleError(
                self.state.name, f"start epoch {epoch} at tick {self.clock.tick} (expected {start})"
            )

        self._advance_until_growth(epoch)

        report = self.growth.grow(epoch, self.neurons, self.synapses)
        self.clock.epoch = epoch
        self.reports.append(report)
        finished = epoch >= self.num_epochs
        if finished:
            self.state = SchedulerState.FINISHED

        self._emit("growth", report=report)
        self._emit(
            "epoch_complete",
            epoch=epoch,
            tick=self.clock.tick,
            time=self.clock.time,
            report=report,
        )

        if finished:
            logger.info(
                "Simulation finished: %d epochs, %.3f s simulated, %d synapses",
                epoch, self.clock.time, len(self.synapses),
            )
            self._emit("finished", epoch=epoch, time=self.clock.time)
        return report

    def _advance_until_growth(self, epoch: int) -> None:
        neurons = self.neurons
        synapses = self.synapses
        activity = self.growth.state
        clock = self.clock
        end = clock.tick + clock.ticks_per_epoch

        logger.debug("Epoch %d/%d: ticks %d..%d", epoch, self.num_epochs, clock.tick, end - 1)
        while clock.tick < end:
            tick = clock.tick
            fired = neurons.step(tick, synapses)
            synapses.step(tick, neurons.summation)
            if fired.size:
                activity.record_spikes(tick, int(fired.size))
            clock.advance()
            if clock.tick % self._progress_interval == 0:
                logger.debug(
                    "%d/%d simulating time: %.4f", epoch, self.num_epochs, clock.time
                )
        activity.pad_activity(end)

    def run(self, num_epochs: Optional[int] = None) -> List[GrowthReport]:
        """Run ``num_epochs`` epochs, or every remaining epoch when omitted."""
        if self.state is SchedulerState.FINISHED:
            raise LifecycleError(self.state.name, "run")
        count = self.epochs_remaining if num_epochs is None else min(num_epochs, self.epochs_remaining)
        return [self.run_epoch() for _ in range(count)]

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def checkpoint(self, path: str) -> None:
        """Save the complete simulation state at the current epoch boundary.

        The extension picks the format: ``.msgpack`` or JSON otherwise.
        """
        state_codec.write_payload(state_codec.encode_scheduler(self), path)
        logger.info("Checkpoint saved at epoch %d (tick %d) to %s",
                    self.clock.epoch, self.clock.tick, path)

    @classmethod
    def from_checkpoint(cls, path: str) -> "EpochScheduler":
        """Build a scheduler that continues exactly where the checkpoint left off.

        Raises:
            CheckpointError: unreadable, malformed or version-mismatched file.
        """
        data = state_codec.read_payload(path)
        config = state_codec.validate_payload(data, path)
        sched = cls(config)
        state_codec.apply_payload(sched, data)
        sched.state = SchedulerState[data["scheduler_state"]]
        logger.info("Restored checkpoint %s at epoch %d (tick %d)",
                    path, sched.clock.epoch, sched.clock.tick)
        return sched

    def restore(self, path: str) -> None:
        """Replace this scheduler's state with a checkpoint; handlers are kept.

        Nothing changes if the checkpoint is rejected.
        """
        restored = self.from_checkpoint(path)
        self.config = restored.config
        self.rng = restored.rng
        self.grid = restored.grid
        self.neurons = restored.neurons
        self.synapses = restored.synapses
        self.growth = restored.growth
        self.clock = restored.clock
        self.state = restored.state
        self.reports = restored.reports
        self.initial_report = restored.initial_report
        self._progress_interval = restored._progress_interval

    def final_report(self) -> Dict[str, Any]:
        """Total simulated time, histories and connectivity snapshot."""
        return state_codec.build_final_report(self)
