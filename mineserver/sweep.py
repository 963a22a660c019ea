"""
sweep.py - Periodic session sweep.

Closes every open session that has run its full length, using the same
validator close path as the on-demand check. Records are handled one at a
time under a per-record timeout; a record that fails is logged and skipped
and the pass moves on.

The sweep only needs the database, so it can run inside the server
(``SessionSweeper.run``) or as its own process:

    python -m mineserver.sweep --db-path data/mining.db [--loop]
"""

import argparse
import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from mineserver.config import MiningConfig

if TYPE_CHECKING:
    from mineserver.storage import UserRepo
    from mineserver.validator import SessionValidator

logger = logging.getLogger("sweep")


class SessionSweeper:
    """Safety net that closes sessions the client never came back for."""

    def __init__(self, user_repo: "UserRepo", validator: "SessionValidator"):
        self._users = user_repo
        self._validator = validator
        self.passes = 0

    @property
    def config(self) -> MiningConfig:
        return self._validator.config

    async def sweep_once(self) -> dict:
        """Run one pass. Returns counts of scanned/closed/skipped/failed records."""
        summary = {"scanned": 0, "closed": 0, "skipped": 0, "failed": 0, "earnings": 0.0}
        records = await self._users.list_earning()
        self.passes += 1
        if not records:
            logger.debug("Sweep pass %d: no open sessions", self.passes)
            return summary

        logger.info("Sweep pass %d: %d open sessions", self.passes, len(records))
        for record in records:
            summary["scanned"] += 1
            try:
                close = await asyncio.wait_for(
                    self._validator.close_if_expired(record),
                    timeout=self.config.sweep_record_timeout,
                )
            except Exception:
                summary["failed"] += 1
                logger.exception("Sweep failed to close session for %s", record.get("user_id"))
                continue
            if close is None:
                summary["skipped"] += 1
            else:
                summary["closed"] += 1
                summary["earnings"] += close.earnings

        logger.info(
            "Sweep pass %d finished: scanned=%d closed=%d skipped=%d failed=%d",
            self.passes, summary["scanned"], summary["closed"],
            summary["skipped"], summary["failed"],
        )
        return summary

    async def run(
        self,
        interval: Optional[float] = None,
        after_pass: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        """Sweep forever every ``interval`` seconds (config default).

        ``after_pass`` runs after each pass, under the same error guard.
        """
        interval = interval or self.config.sweep_interval
        while True:
            try:
                await self.sweep_once()
                if after_pass is not None:
                    await after_pass()
            except Exception:
                logger.exception("Error in session sweep")
            await asyncio.sleep(interval)


async def _run_standalone(args) -> dict:
    from mineserver.notifications import ActivitySink
    from mineserver.storage import StorageManager
    from mineserver.validator import SessionValidator

    config = MiningConfig()
    if args.interval:
        config = config.with_overrides(sweep_interval=args.interval)
    storage = StorageManager(args.db_path)
    await storage.initialize()
    try:
        sink = ActivitySink(storage.activity, storage.users)
        validator = SessionValidator(storage.users, config, sink=sink)
        sweeper = SessionSweeper(storage.users, validator)
        if args.loop:
            await sweeper.run()
        return await sweeper.sweep_once()
    finally:
        await storage.close()


def main():
    """CLI entry point for running the sweep outside the API server."""
    parser = argparse.ArgumentParser(description="Close expired mining sessions")
    parser.add_argument("--db-path", default="data/mining.db", help="SQLite database path (default: data/mining.db)")
    parser.add_argument("--loop", action="store_true", help="Keep sweeping on an interval instead of a single pass")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between passes with --loop (default: 600)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        summary = asyncio.run(_run_standalone(args))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return
    logger.info("Sweep summary: %s", summary)


if __name__ == "__main__":
    main()
