"""Tick-driven simulation orchestration for the town economy."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from ..world.world import World


@dataclass
class RunnerStatus:
    running: bool
    paused: bool
    elapsed_seconds: float
    tick: int
    pulse_running: bool
    summary: dict[str, Any] = field(default_factory=dict)


class SimulationRunner:
    """Advance world ticks, keep the market pulse alive and flush activity to the log."""

    def __init__(self, world: World) -> None:
        self.world = world
        self._running = False
        self._paused = False
        self._stop_requested = False
        self._pause_event = asyncio.Event()
        self._pause_event.set()
        self._start_monotonic: float | None = None
        self._ticks_run = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def elapsed_seconds(self) -> float:
        if self._start_monotonic is None:
            return 0.0
        return max(0.0, time.monotonic() - self._start_monotonic)

    def pause(self) -> None:
        self._paused = True
        self._pause_event.clear()
        self.world.pulse.stop()

    def resume(self) -> None:
        self._paused = False
        self._pause_event.set()

    def stop(self) -> None:
        self._stop_requested = True
        self._pause_event.set()

    def get_status(self) -> RunnerStatus:
        return RunnerStatus(
            running=self._running,
            paused=self._paused,
            elapsed_seconds=self.elapsed_seconds,
            tick=self.world.current_tick,
            pulse_running=self.world.pulse.is_running,
            summary={
                "ticks_run": self._ticks_run,
                "active_events": [event.id for event in self.world.events.get_active_events()],
                "channel_dropped": self.world.channel.dropped,
            },
        )

    def _ensure_pulse(self) -> None:
        if self.world.config.market_pulse.enabled and not self.world.pulse.is_running:
            self.world.pulse.start()

    async def run(self, ticks: int | None = None, duration: float | None = None) -> World:
        if self._running:
            return self.world

        sim = self.world.config.simulation
        max_runtime = sim.max_runtime_seconds
        target_ticks = ticks if ticks is not None else sim.default_ticks
        interval = max(0.0, sim.tick_interval_seconds)
        summary_interval = max(1, sim.summary_interval_ticks)

        self._running = True
        self._paused = False
        self._stop_requested = False
        self._pause_event.set()
        self._start_monotonic = time.monotonic()
        self._ticks_run = 0

        self.world.logger.log(
            "simulation_started",
            {
                "tick": self.world.current_tick,
                "ticks": target_ticks,
                "duration_seconds": duration,
                "tick_interval_seconds": interval,
                "max_runtime_seconds": max_runtime,
                "pulse_enabled": self.world.config.market_pulse.enabled,
            },
        )

        try:
            while not self._stop_requested:
                await self._pause_event.wait()
                if self._stop_requested:
                    break
                self._ensure_pulse()

                elapsed = self.elapsed_seconds
                if max_runtime > 0 and elapsed >= max_runtime:
                    self.world.logger.log(
                        "simulation_runtime_limit_reached",
                        {
                            "tick": self.world.current_tick,
                            "elapsed_seconds": elapsed,
                            "max_runtime_seconds": max_runtime,
                        },
                    )
                    break
                if duration is not None and duration > 0 and elapsed >= duration:
                    break
                if target_ticks > 0 and self._ticks_run >= target_ticks:
                    break

                self.world.advance_tick()
                self._ticks_run += 1
                self.world.drain_activity()

                if self._ticks_run % summary_interval == 0:
                    self.world.log_summary_snapshot()

                await asyncio.sleep(interval)
        finally:
            self._stop_requested = True
            self._pause_event.set()
            self.world.pulse.stop()
            self.world.drain_activity()

            self._running = False
            self.world.log_summary_snapshot()
            self.world.logger.log(
                "simulation_stopped",
                {
                    "tick": self.world.current_tick,
                    "ticks_run": self._ticks_run,
                    "elapsed_seconds": self.elapsed_seconds,
                    "pool": self.world.engine.get_pool_summary(),
                },
            )

        return self.world
