#!/usr/bin/env python3
"""
VeFarm Service Runner — starts a farm engine with:
  - SQLite persistence (restore on start, periodic and final snapshots)
  - REST API
  - Structured logging

Usage:
    python run_farm.py --config vefarm.toml
    python run_farm.py --port 8080 --db data/vefarm.db --fund alice=1000

Environment variables (alternative to flags):
    VEFARM_API_PORT, VEFARM_API_KEY, VEFARM_DB_PATH, VEFARM_LOG_LEVEL, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from vefarm_core.api import APIServer  # noqa: E402
from vefarm_core.config import VeFarmConfig, load_config  # noqa: E402
from vefarm_core.farm import Farm  # noqa: E402
from vefarm_core.logging_config import setup_logging  # noqa: E402
from vefarm_core.precision import format_amount, to_units  # noqa: E402
from vefarm_core.storage import FarmStore  # noqa: E402
from vefarm_core.tokens import RewardToken  # noqa: E402

logger = logging.getLogger("vefarm")


# ===================================================================
#  Farm service
# ===================================================================

class FarmService:
    """Owns the farm, its store and its API server for one process."""

    def __init__(self, config: VeFarmConfig):
        self.config = config
        token_cfg = config.reward_token
        self.reward = RewardToken(token_cfg.symbol, int(token_cfg.max_supply))
        self.farm = Farm(
            self.reward,
            config.farm.to_parameters(),
            farm_account=config.farm.farm_account,
            staking_pool_weight=int(config.farm.staking_pool_weight),
            check_invariants=config.farm.check_invariants,
        )
        self.store: FarmStore | None = None
        self._api: APIServer | None = None
        self._bg_tasks: list[asyncio.Task] = []

    # ---- lifecycle ----

    async def start(self) -> None:
        restored = False
        if self.config.storage.enabled:
            self.store = FarmStore(self.config.storage.path)
            restored = self.store.restore_farm(self.farm)

        if not restored:
            self._genesis()

        if self.config.api.enabled:
            api_cfg = self.config.api
            self._api = APIServer(
                self.farm, host=api_cfg.host, port=api_cfg.port, api_config=api_cfg,
            )
            await self._api.start()

        if self.store is not None and self.config.storage.snapshot_interval > 0:
            self._bg_tasks.append(asyncio.create_task(self._snapshot_loop()))

        logger.info(
            f"Farm ready: {self.farm.pool_count()} pools, reward "
            f"{self.reward.symbol} supply {format_amount(self.reward.total_supply(), self.reward.symbol)}"
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        await asyncio.gather(*self._bg_tasks, return_exceptions=True)
        self._bg_tasks.clear()
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            self.snapshot()
            self.store.close()
        logger.info("Farm stopped")

    def _genesis(self) -> None:
        token_cfg = self.config.reward_token
        initial = int(token_cfg.initial_supply)
        if initial > 0:
            self.reward.credit(token_cfg.initial_holder, initial)
            logger.info(
                f"Genesis: credited {format_amount(initial, self.reward.symbol)} "
                f"to {token_cfg.initial_holder}"
            )

    def snapshot(self) -> None:
        if self.store is None or self.farm.in_transaction:
            return
        self.store.snapshot_farm(self.farm)

    async def _snapshot_loop(self) -> None:
        interval = self.config.storage.snapshot_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.snapshot()
            except Exception as exc:
                logger.error(f"Snapshot failed: {exc}", exc_info=True)

    def fund(self, holder: str, tokens: str) -> None:
        """Credit whole reward tokens to ``holder`` (development only)."""
        amount = to_units(tokens)
        self.reward.credit(holder, amount)
        logger.info(f"Funded {holder} with {format_amount(amount, self.reward.symbol)}")


def parse_args():
    p = argparse.ArgumentParser(description="VeFarm reward-distribution service")
    p.add_argument("--config", default=None, help="Path to vefarm.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port (enables the API)")
    p.add_argument("--db", default=None, help="SQLite path (enables persistence)")
    p.add_argument("--fund", action="append", default=[], metavar="USER=TOKENS",
                   help="Credit reward tokens to a user on startup (repeatable)")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    service = FarmService(cfg)
    await service.start()

    for entry in args.fund:
        holder, _, tokens = entry.partition("=")
        if not holder or not tokens:
            logger.warning(f"Ignoring malformed --fund value {entry!r}")
            continue
        service.fund(holder, tokens)

    try:
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        await service.stop()


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
