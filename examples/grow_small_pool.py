"""Grow connections in a small neuron pool.

Runs a 5x5 pool with a few endogenously active neurons for a handful of
epochs, printing a status line after every growth update, checkpointing
halfway and writing the final-state report.
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from epoch_scheduler import EpochScheduler
from neurogrowth_config import load_config
from neurogrowth_monitoring import GrowthEventLogger, configure_logging, status_summary
from state_codec import write_final_report


def main():
    parser = argparse.ArgumentParser(description="Grow a small LIF neuron pool.")
    parser.add_argument("--config", help="JSON configuration file (demo pool and timing settings take precedence)")
    parser.add_argument("--epochs", type=int, default=6, help="Number of epochs (default: 6)")
    parser.add_argument("--out", default="grow_small_pool_out", help="Output directory")
    parser.add_argument("--verbose", action="store_true", help="Log tick progress")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    os.makedirs(args.out, exist_ok=True)

    overrides = {
        "pool_size": {"x": 5, "y": 5},
        "sim_params": {
            "epoch_duration": 0.5,
            "num_epochs": args.epochs,
            "max_firing_rate": 200,
            "max_synapses_per_neuron": 200,
        },
        "fractions": {"excitatory": 0.9, "starter": 0.12},
        "monitoring": {"log_dir": os.path.join(args.out, "logs")},
        "seed": 777,
    }
    cfg = load_config(overrides, config_path=args.config)

    sched = EpochScheduler(cfg)
    events = GrowthEventLogger(cfg)
    events.attach(sched)
    sched.register_event_handler("epoch_complete", lambda **kw: print(status_summary(sched)))

    print("=== Initial State ===")
    print(f"{cfg.num_neurons} neurons, {len(sched.synapses)} synapses")
    print(status_summary(sched))

    half = cfg.sim_params.num_epochs // 2
    print(f"\n=== Growing: {half} epochs ===")
    sched.run(half)

    ckpt = os.path.join(args.out, "halfway.msgpack")
    sched.checkpoint(ckpt)
    print(f"Checkpoint written to {ckpt}")

    # Continue from the checkpoint; the result matches an uninterrupted run
    resumed = EpochScheduler.from_checkpoint(ckpt)
    events.attach(resumed)
    resumed.register_event_handler("epoch_complete", lambda **kw: print(status_summary(resumed)))
    print(f"\n=== Resumed: {resumed.epochs_remaining} epochs ===")
    resumed.run()

    report_path = os.path.join(args.out, "final_report.json")
    write_final_report(resumed, report_path)
    events.close()

    radii = resumed.growth.state.radii_history
    print("\n=== Final State ===")
    print(f"Mean radius per epoch: {', '.join(f'{r:.3f}' for r in radii.mean(axis=1))}")
    print(f"{len(resumed.synapses)} synapses, report at {report_path}")


if __name__ == "__main__":
    main()
