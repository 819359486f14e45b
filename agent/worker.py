"""
Sandbox worker loop.

Runs inside the sandbox next to the agent runtime. Each cycle it claims the
request files the host has dropped into the shared ipc directory, runs the
agent for each one, writes the response record and finally refreshes the
heartbeat so the host can tell the sandbox is alive.

Usage:
    python -m agent.worker --ipc-dir /workspace/ipc --runner mypkg.agent:run

The process registry limits and the default poll interval come from the
``sandbox`` section of config.yaml; ``--poll-ms`` and ``--ipc-dir`` override it.

The runner is an ``async def run(request, registry) -> response`` callable
named as ``module:function``.
"""

import argparse
import asyncio
import importlib
import inspect
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from agent.errors import RequestValidationError
from agent.ipc import FileExchange
from agent.protocol import (
    AgentRunFailure,
    AgentRunRequest,
    AgentRunSuccess,
    error_response,
    parse_request,
)
from gateway.config import ConfigError, RuntimeConfig, load_runtime_config
from tools.process_registry import ProcessConfig, ProcessRegistry

logger = logging.getLogger(__name__)

AgentRunResponse = Union[AgentRunSuccess, AgentRunFailure]
AgentRunner = Callable[[AgentRunRequest, ProcessRegistry], Union[AgentRunResponse, Awaitable[AgentRunResponse]]]

DEFAULT_POLL_MS = 500


class WorkerLoop:
    """Claims request files, runs the agent and answers with response files."""

    def __init__(
        self,
        exchange: FileExchange,
        run_agent: AgentRunner,
        poll_interval: float = DEFAULT_POLL_MS / 1000,
        registry: Optional[ProcessRegistry] = None,
    ):
        self.exchange = exchange
        self.run_agent = run_agent
        self.poll_interval = poll_interval
        self.registry = registry or ProcessRegistry()

    async def process_pending(self) -> int:
        """Handle every request currently waiting. Returns how many were answered."""
        answered = 0
        for path in self.exchange.pending_requests():
            request_id = path.stem
            if self.exchange.has_response(request_id):
                # Left over from a crash between writing the response and
                # deleting the request; the host already has its answer.
                logger.warning("Request %s already answered, dropping duplicate", request_id)
                path.unlink(missing_ok=True)
                continue

            try:
                raw = path.read_bytes()
            except FileNotFoundError:
                continue

            try:
                response = await self._handle(request_id, raw)
                self.exchange.write_response(request_id, response)
                path.unlink(missing_ok=True)
            except OSError:
                logger.exception("Could not answer request %s", request_id)
                continue
            answered += 1
        return answered

    async def _handle(self, request_id: str, raw: bytes) -> AgentRunResponse:
        started = time.monotonic()
        try:
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise RequestValidationError(f"Request file is not valid UTF-8: {e}") from e
            request = parse_request(text)
            if request.id != request_id:
                raise RequestValidationError(
                    f"Request id {request.id!r} does not match file name {request_id!r}"
                )
        except RequestValidationError as e:
            logger.warning("Rejected request %s: %s", request_id, e)
            return error_response(str(e), latency_ms=0)

        logger.info(
            "Running agent for %s (group=%s, main=%s, scheduled=%s)",
            request.id, request.group_key, request.is_main, request.is_scheduled,
        )
        try:
            result = self.run_agent(request, self.registry)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Agent run %s failed", request.id)
            return error_response(
                f"{type(e).__name__}: {e}",
                latency_ms=int((time.monotonic() - started) * 1000),
            )

        if not isinstance(result, (AgentRunSuccess, AgentRunFailure)):
            return error_response(
                f"Agent runner returned {type(result).__name__}, expected a response record",
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return result

    async def run_forever(self, stop: asyncio.Event) -> None:
        self.exchange.ensure_dirs()
        logger.info("Worker loop started on %s (poll every %.3fs)", self.exchange.root, self.poll_interval)
        try:
            while not stop.is_set():
                try:
                    await self.process_pending()
                except Exception:
                    logger.exception("Worker cycle failed")
                self.exchange.write_heartbeat()
                try:
                    await asyncio.wait_for(stop.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.registry.shutdown()
            logger.info("Worker loop stopped")


def load_runner(target: str) -> AgentRunner:
    """Resolve a ``module:function`` string to the agent runner callable."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Runner must look like 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    runner = getattr(module, attr, None)
    if not callable(runner):
        raise ValueError(f"{target!r} is not callable")
    return runner


def build_worker(args: argparse.Namespace, config: RuntimeConfig) -> WorkerLoop:
    """Wire a WorkerLoop from CLI arguments and the ``sandbox`` config section.

    Command-line values win over the config file.
    """
    sandbox = config.sandbox
    registry = ProcessRegistry(ProcessConfig(
        max_sessions=sandbox.max_sessions,
        max_output_bytes=sandbox.max_output_bytes,
        default_timeout_ms=sandbox.default_timeout_ms,
    ))
    poll_ms = args.poll_ms if args.poll_ms is not None else sandbox.poll_interval_ms
    return WorkerLoop(
        FileExchange(args.ipc_dir or config.host.ipc_dir),
        load_runner(args.runner),
        poll_interval=poll_ms / 1000,
        registry=registry,
    )


async def _amain(worker: WorkerLoop) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)
    await worker.run_forever(stop)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="clawbox sandbox worker loop")
    parser.add_argument("--ipc-dir", type=Path, default=None, help="Shared exchange directory")
    parser.add_argument("--runner", required=True, help="Agent runner as module:function")
    parser.add_argument("--poll-ms", type=int, default=None, help="Request poll interval")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        config = load_runtime_config(args.config)
        worker = build_worker(args, config)
    except (ConfigError, ValueError, ImportError) as e:
        print(f"Worker setup failed: {e}", file=sys.stderr)
        return 2
    asyncio.run(_amain(worker))
    return 0


if __name__ == "__main__":
    sys.exit(main())
