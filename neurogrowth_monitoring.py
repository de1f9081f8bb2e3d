"""
NeuroGrowth Monitoring: status summary and rotating growth event log.

Two monitoring layers:

1. ``status_summary()``: one-line human readable status of a scheduler
   (e.g. "NeuroGrowth: epoch 3/10, 3.000 s simulated, 412 synapses, ...").
2. ``GrowthEventLogger``: rotating JSON-lines file logger writing
   ``growth.log`` under ``monitoring.log_dir``.  ``attach()`` subscribes it
   to the scheduler's ``growth``, ``epoch_complete`` and ``finished`` events.

Usage::

    from neurogrowth_monitoring import GrowthEventLogger, status_summary
    events = GrowthEventLogger(config)
    events.attach(scheduler)
    scheduler.run()
    print(status_summary(scheduler))
    events.close()
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from neurogrowth_config import SimulationConfig

logger = logging.getLogger("neurogrowth.monitoring")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Send ``neurogrowth.*`` records to stderr (for scripts and demos)."""
    root = logging.getLogger("neurogrowth")
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)


# ── Status summary (Layer 1) ───────────────────────────────────────────


def status_summary(scheduler: Any) -> str:
    """Generate a one-line status for an ``EpochScheduler``.

    Args:
        scheduler: ``EpochScheduler`` instance.

    Returns:
        Human-readable status string.
    """
    clock = scheduler.clock
    parts = [
        f"NeuroGrowth: epoch {clock.epoch}/{scheduler.num_epochs}",
        f"{clock.time:.3f} s simulated",
        f"{len(scheduler.synapses):,} synapses",
    ]
    state = scheduler.growth.state
    if state.num_epochs:
        parts.append(f"mean rate {float(state.rates.mean()):.3f} Hz")
    parts.append(f"mean radius {float(state.radii.mean()):.3f}")
    parts.append(scheduler.state.name.lower())
    return ", ".join(parts)


# ── Rotating event log (Layer 2) ───────────────────────────────────────


class GrowthEventLogger:
    """Rotating file logger for growth events.

    Writes structured JSON-line events to ``growth.log`` with automatic
    rotation based on file size.

    Args:
        config: ``SimulationConfig`` with monitoring parameters.
    """

    def __init__(self, config: SimulationConfig) -> None:
        self._cfg = config.monitoring
        self._logger = logging.getLogger("neurogrowth.events")
        self._handler: Optional[logging.Handler] = None
        self.path: Optional[Path] = None
        self._setup_handler()

    def _setup_handler(self) -> None:
        """Configure rotating file handler."""
        log_dir = Path(self._cfg.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        self.path = log_dir / "growth.log"

        handler = logging.handlers.RotatingFileHandler(
            str(self.path),
            maxBytes=self._cfg.max_log_size_mb * 1024 * 1024,
            backupCount=self._cfg.backup_count,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)
        self._handler = handler

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write a structured event to the growth log."""
        event = {
            "timestamp": time.time(),
            "event": event_type,
            "data": data,
        }
        self._logger.info(json.dumps(event, default=str))

    def attach(self, scheduler: Any) -> None:
        """Log every growth, epoch and finish event emitted by ``scheduler``."""
        scheduler.register_event_handler("growth", self._on_growth)
        scheduler.register_event_handler("epoch_complete", self._on_epoch_complete)
        scheduler.register_event_handler("finished", self._on_finished)
        logger.debug("Growth event log %s attached to %r", self.path, scheduler)

    def _on_growth(self, report: Any) -> None:
        self.log_event("growth", asdict(report))

    def _on_epoch_complete(self, epoch: int, tick: int, time: float, report: Any) -> None:
        self.log_event("epoch_complete", {
            "epoch": epoch,
            "tick": tick,
            "time": time,
            "total_synapses": report.total_synapses,
        })

    def _on_finished(self, epoch: int, time: float) -> None:
        self.log_event("finished", {"epoch": epoch, "time": time})

    def close(self) -> None:
        """Detach and close the file handler."""
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
