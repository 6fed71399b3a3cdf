"""Town economy command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

from .config import AppConfig, apply_env_overrides, load_config
from .simulation import SimulationRunner
from .world import World


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the town economy simulation")
    parser.add_argument("--config", default="config/config.yaml", help="Path to config YAML")
    parser.add_argument("--ticks", type=int, default=None, help="Number of ticks to run")
    parser.add_argument("--agents", type=int, default=None, help="Override principal count")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the simulation RNG")
    return parser.parse_args(argv)


def _load_runtime_config(path: str, agents_override: int | None, seed: int | None) -> AppConfig:
    config = apply_env_overrides(load_config(path))
    if agents_override is not None:
        if agents_override <= 0:
            raise ValueError("--agents must be > 0")
        config.principals.count = agents_override
    if seed is not None:
        config.simulation.seed = seed
    return config


def _effective_ticks(config: AppConfig, ticks_override: int | None) -> int:
    if ticks_override is not None:
        if ticks_override <= 0:
            raise ValueError("--ticks must be > 0")
        return ticks_override
    return config.simulation.default_ticks


async def _run_headless(config: AppConfig, ticks: int) -> World:
    world = World(config)
    runner = SimulationRunner(world)
    return await runner.run(ticks=ticks)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)

    os.chdir(Path(__file__).resolve().parents[2])

    config = _load_runtime_config(args.config, args.agents, args.seed)
    ticks = _effective_ticks(config, args.ticks)

    world = asyncio.run(_run_headless(config, ticks))

    summary = world.get_state_summary()
    pool = summary["pool"]
    print("=== town economy complete ===")
    print(f"run_id: {world.run_id}")
    print(f"tick: {summary['tick']}")
    print(f"pool: reserve={pool['reserve_balance']} arena={pool['arena_balance']} spot={pool['spot_price']}")
    print(f"fees: reserve={pool['cumulative_fees_reserve']} arena={pool['cumulative_fees_arena']}")
    print(f"budgets: ops={pool['ops_budget']} insurance={pool['insurance_budget']} pvp={pool['pvp_budget']}")
    print(f"log_path: {world.logger.output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
