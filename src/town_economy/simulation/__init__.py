"""Simulation package exports."""

from .runner import RunnerStatus, SimulationRunner

__all__ = ["SimulationRunner", "RunnerStatus"]
