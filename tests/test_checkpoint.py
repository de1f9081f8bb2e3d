"""Tests for checkpoint save/restore in JSON and msgpack formats."""

import json
import os
import sys

import msgpack
import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from epoch_scheduler import EpochScheduler, SchedulerState
from neurogrowth_config import load_config
from neurogrowth_errors import CheckpointError, LifecycleError
from state_codec import CHECKPOINT_VERSION


def _config(num_epochs=4):
    return load_config({
        "pool_size": {"x": 3, "y": 3},
        "sim_params": {"epoch_duration": 0.05, "num_epochs": num_epochs,
                       "max_firing_rate": 200, "max_synapses_per_neuron": 200},
        "neuron_params": {"i_inject": [14e-9, 14e-9]},
        "fractions": {"excitatory": 0.8, "starter": 0.3},
        "growth_params": {"start_radius": 0.6},
        "seed": 42,
    })


def _assert_same_run(a, b):
    assert a.clock.tick == b.clock.tick
    assert a.clock.epoch == b.clock.epoch
    assert a.state is b.state
    st_a, st_b = a.growth.state, b.growth.state
    assert np.array_equal(st_a.radii_history, st_b.radii_history)
    assert np.array_equal(st_a.rates_history, st_b.rates_history)
    assert np.array_equal(st_a.outgrowth_history, st_b.outgrowth_history)
    assert st_a.spikes_history == st_b.spikes_history
    assert a.synapses.pairs() == b.synapses.pairs()
    assert np.array_equal(a.synapses.weight_matrix(), b.synapses.weight_matrix())
    assert np.array_equal(a.neurons.vm, b.neurons.vm)
    assert np.array_equal(a.neurons.total_spikes, b.neurons.total_spikes)


class TestRoundTrip:
    @pytest.mark.parametrize("filename", ["sim.json", "sim.msgpack"])
    def test_resume_matches_uninterrupted_run(self, tmp_path, filename):
        reference = EpochScheduler(_config())
        reference.run()

        first = EpochScheduler(_config())
        first.run(2)
        path = str(tmp_path / filename)
        first.checkpoint(path)

        resumed = EpochScheduler.from_checkpoint(path)
        assert resumed.clock.epoch == 2
        assert resumed.state is SchedulerState.RUNNING
        resumed.run()
        _assert_same_run(resumed, reference)

    def test_checkpoint_at_idle(self, tmp_path):
        sched = EpochScheduler(_config())
        path = str(tmp_path / "idle.json")
        sched.checkpoint(path)
        resumed = EpochScheduler.from_checkpoint(path)
        assert resumed.state is SchedulerState.IDLE
        assert resumed.synapses.pairs() == sched.synapses.pairs()

    def test_checkpoint_at_finished(self, tmp_path):
        sched = EpochScheduler(_config(num_epochs=1))
        sched.run()
        path = str(tmp_path / "done.msgpack")
        sched.checkpoint(path)
        resumed = EpochScheduler.from_checkpoint(path)
        assert resumed.state is SchedulerState.FINISHED
        with pytest.raises(LifecycleError):
            resumed.run_epoch()

    def test_json_is_indented(self, tmp_path):
        path = tmp_path / "sim.json"
        EpochScheduler(_config()).checkpoint(str(path))
        data = json.loads(path.read_text())
        assert data["version"] == CHECKPOINT_VERSION
        assert "\n  " in path.read_text()

    def test_restore_in_place_keeps_handlers(self, tmp_path):
        sched = EpochScheduler(_config())
        sched.run(1)
        path = str(tmp_path / "sim.json")
        sched.checkpoint(path)
        seen = []
        sched.register_event_handler("epoch_complete", lambda **kw: seen.append(kw["epoch"]))
        sched.run(2)

        sched.restore(path)
        assert sched.clock.epoch == 1
        sched.run_epoch()
        assert seen == [2, 3, 2]

    def test_restore_keeps_unrelated_attributes(self, tmp_path):
        sched = EpochScheduler(_config())
        path = str(tmp_path / "sim.json")
        sched.checkpoint(path)
        sched.label = "pool-a"
        sched.run(1)

        sched.restore(path)
        assert sched.label == "pool-a"
        assert sched.state is SchedulerState.IDLE
        assert sched.clock.epoch == 0

    def test_checkpoint_from_final_epoch_handler(self, tmp_path):
        sched = EpochScheduler(_config(num_epochs=2))
        path = str(tmp_path / "last.json")
        states = []

        def save(**kw):
            states.append(sched.state)
            sched.checkpoint(path)

        sched.register_event_handler("epoch_complete", save)
        sched.run()
        assert states == [SchedulerState.RUNNING, SchedulerState.FINISHED]

        resumed = EpochScheduler.from_checkpoint(path)
        assert resumed.state is SchedulerState.FINISHED
        assert resumed.clock.epoch == 2
        with pytest.raises(LifecycleError):
            resumed.run_epoch()


class TestRejection:
    def _saved(self, tmp_path, name="sim.json"):
        sched = EpochScheduler(_config())
        sched.run(1)
        path = tmp_path / name
        sched.checkpoint(str(path))
        return sched, path

    def test_version_mismatch(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        data["version"] = "0.9"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError, match="version"):
            EpochScheduler.from_checkpoint(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(tmp_path / "nope.json"))

    def test_undecodable_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(path))

    def test_undecodable_msgpack(self, tmp_path):
        path = tmp_path / "bad.msgpack"
        path.write_bytes(b"\xc1\xc1\xc1")
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(path))

    def test_root_not_mapping(self, tmp_path):
        path = tmp_path / "list.msgpack"
        path.write_bytes(msgpack.packb([1, 2, 3]))
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(path))

    def test_missing_section(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        del data["synapses"]
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError, match="synapses"):
            EpochScheduler.from_checkpoint(str(path))

    def test_truncated_neuron_array(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        data["neurons"]["vm"] = data["neurons"]["vm"][:3]
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(path))

    def test_clock_off_boundary(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        data["clock"]["tick"] += 1
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError):
            EpochScheduler.from_checkpoint(str(path))

    def test_invalid_config(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        data["config"]["seed"] = "abc"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError, match="configuration"):
            EpochScheduler.from_checkpoint(str(path))

    def test_failed_restore_leaves_state_untouched(self, tmp_path):
        sched, path = self._saved(tmp_path)
        sched.run(1)
        tick = sched.clock.tick
        pairs = sched.synapses.pairs()
        vm = sched.neurons.vm.copy()

        data = json.loads(path.read_text())
        data["version"] = "2.0"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError):
            sched.restore(str(path))
        assert sched.clock.tick == tick
        assert sched.synapses.pairs() == pairs
        assert np.array_equal(sched.neurons.vm, vm)

    def test_non_numeric_voltage(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        data["neurons"]["vm"][0] = "oops"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError, match="neurons.vm"):
            EpochScheduler.from_checkpoint(str(path))

    def test_non_numeric_synapse_weight(self, tmp_path):
        _, path = self._saved(tmp_path)
        data = json.loads(path.read_text())
        assert data["synapses"]["weight"]
        data["synapses"]["weight"][0] = "heavy"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError, match="synapses.weight"):
            EpochScheduler.from_checkpoint(str(path))

    def test_non_numeric_voltage_leaves_state_untouched(self, tmp_path):
        sched, path = self._saved(tmp_path)
        sched.run(1)
        vm = sched.neurons.vm.copy()

        data = json.loads(path.read_text())
        data["neurons"]["vm"][0] = "oops"
        path.write_text(json.dumps(data))
        with pytest.raises(CheckpointError):
            sched.restore(str(path))
        assert sched.clock.epoch == 2
        assert np.array_equal(sched.neurons.vm, vm)
