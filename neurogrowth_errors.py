"""
NeuroGrowth error taxonomy.

ConfigurationError and CheckpointError are fatal and raised before any state
is touched.  CapacityError is raised by the synapse bank and is recovered by
the growth engine, which skips the offending creation.  LifecycleError marks
a programming error: an operation invoked in the wrong scheduler state.
"""

from __future__ import annotations

from typing import List, Optional


class NeuroGrowthError(Exception):
    """Base class for all simulator errors."""


class ConfigurationError(NeuroGrowthError):
    """Bad or missing parameters.

    All problems found while loading are collected in ``errors`` so that the
    caller sees every one of them at once.
    """

    def __init__(self, errors: List[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = f"{len(self.errors)} configuration errors:\n  " + "\n  ".join(self.errors)
        super().__init__(message)


class CapacityError(NeuroGrowthError):
    """A neuron's outgoing synapse count would exceed the configured cap."""

    def __init__(self, neuron: int, cap: int):
        self.neuron = neuron
        self.cap = cap
        super().__init__(f"Neuron {neuron} reached its cap of {cap} outgoing synapses")


class LifecycleError(NeuroGrowthError):
    """Operation invoked in a scheduler state where it is not legal."""

    def __init__(self, state: str, operation: str):
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} while scheduler is {state}")


class CheckpointError(NeuroGrowthError):
    """Malformed or version-mismatched checkpoint."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)
