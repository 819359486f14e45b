"""
Gateway runner - host-side entry point.

This module provides:
- setup_logging(): console + rotating file logs
- build_coordinator(): ExecutionCoordinator wired from RuntimeConfig
- GatewayRunner: owns the coordinator, the webhook server and housekeeping

Usage:
    python -m gateway.run
"""

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from agent.ipc import FileExchange
from gateway.config import ConfigError, RuntimeConfig, load_runtime_config
from gateway.execution import ExecutionCoordinator
from gateway.locks import AgentSemaphore, GroupLock
from gateway.session_store import SessionStore
from gateway.telemetry import AgentMetrics, TelemetrySink, TraceWriter
from gateway.webhook import WebhookServer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Orphaned response files are swept this often
SWEEP_INTERVAL_S = 600


def setup_logging(logs_dir: Path, level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / "gateway.log",
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning("File logging disabled (%s): %s", logs_dir, e)
        return
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


def build_coordinator(
    config: RuntimeConfig,
    sessions: Optional[SessionStore] = None,
    metrics: Optional[AgentMetrics] = None,
) -> ExecutionCoordinator:
    host = config.host
    return ExecutionCoordinator(
        FileExchange(host.ipc_dir),
        group_lock=GroupLock(),
        semaphore=AgentSemaphore(host.max_concurrent_agents, max_waiting=host.max_waiting_agents),
        sessions=sessions,
        telemetry=TelemetrySink(TraceWriter(host.traces_dir), metrics or AgentMetrics()),
        timeout_ms=host.agent_timeout_ms,
        poll_interval=host.poll_interval_ms / 1000,
        heartbeat_stale_ms=host.heartbeat_stale_ms,
    )


class GatewayRunner:
    """
    Main host controller.

    Builds the coordinator from config, serves the webhook when enabled and
    periodically removes response files nobody is waiting for.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or load_runtime_config()
        self.sessions = SessionStore(self.config.host.sessions_file)
        self.coordinator = build_coordinator(self.config, sessions=self.sessions)
        self.webhook: Optional[WebhookServer] = None
        self._shutdown_event = asyncio.Event()
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("Starting clawbox gateway")
        logger.info("IPC directory: %s", self.config.host.ipc_dir)
        logger.info("Max concurrent agents: %d", self.config.host.max_concurrent_agents)

        wh = self.config.webhook
        if wh.enabled:
            self.webhook = WebhookServer(
                self.coordinator,
                token=wh.token,
                groups=wh.groups,
                sessions=self.sessions,
                host=wh.host,
                port=wh.port,
            )
            await self.webhook.start()
        else:
            logger.info("Webhook server disabled")

        self._sweeper = asyncio.create_task(self._sweep_loop(), name="orphan-sweeper")

    async def _sweep_loop(self) -> None:
        max_age = self.config.host.orphan_response_max_age_s
        while not self._shutdown_event.is_set():
            try:
                self.coordinator.sweep_orphan_responses(max_age)
            except OSError as e:
                logger.warning("Orphan sweep failed: %s", e)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), SWEEP_INTERVAL_S)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        logger.info("Stopping clawbox gateway")
        self._shutdown_event.set()
        if self.webhook is not None:
            await self.webhook.stop()
        if self._sweeper is not None:
            await self._sweeper
            self._sweeper = None

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def start_gateway(config: RuntimeConfig) -> None:
    runner = GatewayRunner(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, runner.request_shutdown)

    await runner.start()
    try:
        await runner.wait_for_shutdown()
    finally:
        await runner.stop()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="clawbox gateway")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    args = parser.parse_args(argv)

    try:
        config = load_runtime_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config.host.logs_dir, config.host.log_level)
    asyncio.run(start_gateway(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
