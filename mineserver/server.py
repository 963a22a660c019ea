"""
server.py - Mining rewards server entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Session validator, rewards service and notification sink
 - Periodic session sweep (background task)
 - REST API (FastAPI on uvicorn, port 8080)

Usage:
    python -m mineserver.server [--api-port 8080] [--db-path data/mining.db]
"""

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mineserver import __version__
from mineserver.auth import DEFAULT_ADMIN_KEY, AuthService
from mineserver.clock import Clock
from mineserver.config import MiningConfig
from mineserver.errors import InvalidRequestError, MiningError
from mineserver.notifications import ActivitySink, NotificationSink, PushClient
from mineserver.rate_limiter import MemoryRateLimiter, RateLimiter, SQLiteRateLimiter
from mineserver.rewards import RewardsService
from mineserver.routers import register_all_routers
from mineserver.storage import StorageManager
from mineserver.sweep import SessionSweeper
from mineserver.validator import SessionValidator

logger = logging.getLogger("server")


class MiningServer:
    """FastAPI app plus the services behind it, wired at startup."""

    def __init__(
        self,
        api_port: int = 8080,
        db_path: str = "data/mining.db",
        config: Optional[MiningConfig] = None,
        clock: Optional[Clock] = None,
        jwt_secret: str = "",
        admin_key: str = DEFAULT_ADMIN_KEY,
        persist_rate_limits: bool = True,
        enable_sweep: bool = True,
        enable_push: bool = True,
        sink: Optional[NotificationSink] = None,
    ):
        self.api_port = api_port
        self.db_path = db_path
        self.config = config or MiningConfig()
        self.clock = clock or Clock()
        self._persist_rate_limits = persist_rate_limits
        self._enable_sweep = enable_sweep
        self._enable_push = enable_push
        self._sink_override = sink

        self.auth = AuthService(jwt_secret=jwt_secret, admin_key=admin_key)

        # Initialized async in _init_services()
        self.storage: Optional[StorageManager] = None
        self.sink: Optional[NotificationSink] = None
        self.validator: Optional[SessionValidator] = None
        self.rewards: Optional[RewardsService] = None
        self.sweeper: Optional[SessionSweeper] = None
        self.rate_limiter: Optional[RateLimiter] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._uvicorn_server: Optional[uvicorn.Server] = None

        self.app = FastAPI(title="Mining Rewards Server", version=__version__, lifespan=self._lifespan)
        self.app.state.server = self
        self._register_error_handlers()
        register_all_routers(self.app)

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()

        if self._sink_override is not None:
            self.sink = self._sink_override
        else:
            push = PushClient() if self._enable_push else None
            self.sink = ActivitySink(self.storage.activity, self.storage.users, push=push)

        self.validator = SessionValidator(self.storage.users, self.config, self.clock, self.sink)
        self.rewards = RewardsService(self.validator)
        self.sweeper = SessionSweeper(self.storage.users, self.validator)

        if self._persist_rate_limits:
            self.rate_limiter = SQLiteRateLimiter(self.storage.rate_limits, now=self.clock.now)
        else:
            self.rate_limiter = MemoryRateLimiter(now=self.clock.now)

        logger.info("Services initialized (db=%s)", self.db_path)

    async def _shutdown_services(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if self.sink is not None:
            await self.sink.close()
        if self.storage:
            await self.storage.close()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self._init_services()
        if self._enable_sweep:
            self._sweep_task = asyncio.create_task(self._sweep_watchdog())
        try:
            yield
        finally:
            await self._shutdown_services()

    # -------------------------------------------------------------------
    # Session sweep
    # -------------------------------------------------------------------

    async def _purge_rate_limits(self):
        longest = max(rule.window_sec for rule in self.config.rate_limits)
        purged = await self.rate_limiter.prune(longest)
        if purged:
            logger.debug("Purged %d stale rate-limit hits", purged)

    async def _sweep_watchdog(self):
        """Periodically close expired sessions and prune the rate-limit log."""
        await self.sweeper.run(self.config.sweep_interval, after_pass=self._purge_rate_limits)

    # -------------------------------------------------------------------
    # Error rendering
    # -------------------------------------------------------------------

    def _register_error_handlers(self):
        @self.app.exception_handler(MiningError)
        async def mining_error(request: Request, exc: MiningError):
            if exc.status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

        @self.app.exception_handler(RequestValidationError)
        async def invalid_body(request: Request, exc: RequestValidationError):
            return JSONResponse(status_code=400, content=InvalidRequestError("Invalid request").to_dict())

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Serve the API; storage and the sweep start with the app lifespan."""
        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        await self._uvicorn_server.serve()

    async def stop(self):
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True


def main():
    """CLI entry point for the mining rewards server."""
    parser = argparse.ArgumentParser(description="Mining Rewards Server")
    parser.add_argument("--api-port", type=int, default=8080, help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default="data/mining.db", help="SQLite database path (default: data/mining.db)")
    parser.add_argument("--jwt-secret", default=os.environ.get("MINESERVER_JWT_SECRET", ""),
                        help="HS256 secret for user tokens (default: $MINESERVER_JWT_SECRET)")
    parser.add_argument("--admin-key", default=os.environ.get("MINESERVER_ADMIN_KEY", DEFAULT_ADMIN_KEY),
                        help="Admin X-API-Key (default: $MINESERVER_ADMIN_KEY)")
    parser.add_argument("--sweep-interval", type=float, default=600.0, help="Seconds between session sweeps (default: 600)")
    parser.add_argument("--memory-rate-limits", action="store_true", help="Keep rate-limit windows in process memory")
    parser.add_argument("--no-sweep", action="store_true", help="Disable the in-process session sweep")
    parser.add_argument("--no-push", action="store_true", help="Disable Expo push notifications")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    server = MiningServer(
        api_port=args.api_port,
        db_path=args.db_path,
        config=MiningConfig(sweep_interval=args.sweep_interval),
        jwt_secret=args.jwt_secret,
        admin_key=args.admin_key,
        persist_rate_limits=not args.memory_rate_limits,
        enable_sweep=not args.no_sweep,
        enable_push=not args.no_push,
    )

    logger.info("=" * 60)
    logger.info("  Mining Rewards Server")
    logger.info("  REST API:    http://localhost:%d", args.api_port)
    logger.info("  Database:    %s", args.db_path)
    logger.info("  Sweep:       %s", "disabled" if args.no_sweep else "every %.0fs" % args.sweep_interval)
    logger.info("  Rate limits: %s", "memory" if args.memory_rate_limits else "sqlite")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
