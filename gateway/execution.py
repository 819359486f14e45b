"""
Agent execution coordinator.

execute_agent_run() is the one way the host runs an agent:

    group lock -> global semaphore -> submit request file -> wait for
    response file -> release semaphore -> release lock

Whatever happens on the way, telemetry for the run is finalized exactly
once. Failures surface as AgentExecutionError carrying the run context; a
run the agent itself reported as failed (``status: "error"``) is a normal
result and is returned, not raised.
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Union

from agent.errors import ClawboxError, RunAborted, TransportTimeout
from agent.ipc import FileExchange
from agent.protocol import (
    AgentRunFailure,
    AgentRunRequest,
    AgentRunSuccess,
    Attachment,
    RunTimeouts,
    StreamingParams,
)
from clawbox_constants import MAIN_GROUP_KEY
from gateway.error_messages import classify_error, log_level_for
from gateway.locks import AgentSemaphore, GroupLock
from gateway.session_store import SessionStore
from gateway.telemetry import TelemetrySink, TraceBase, create_trace_base

logger = logging.getLogger(__name__)

AgentRunResponse = Union[AgentRunSuccess, AgentRunFailure]

DEFAULT_TIMEOUT_MS = 900_000
DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_HEARTBEAT_STALE_MS = 30_000


@dataclass
class AgentRunParams:
    group_key: str
    channel_id: str
    prompt: str
    # None: derived from the group key (the main group is privileged)
    is_main: Optional[bool] = None
    session_id: Optional[str] = None
    persist_session: bool = True
    on_session_update: Optional[Callable[[str], None]] = None
    user_id: Optional[str] = None
    is_scheduled: bool = False
    is_background: bool = False
    task_id: Optional[str] = None
    attachments: Sequence[Attachment] = ()
    streaming: Optional[StreamingParams] = None
    timeout_ms: Optional[int] = None
    abort: Optional[asyncio.Event] = None
    use_group_lock: bool = True
    source: str = "message"


@dataclass
class RunContext:
    """What the coordinator observed while admitting and running one request."""

    trace: TraceBase
    request_id: str
    group_key: str
    is_main: bool
    is_scheduled: bool = False
    is_background: bool = False
    lock_wait_ms: Optional[int] = None
    semaphore_wait_ms: Optional[int] = None
    exchange_ms: Optional[int] = None
    heartbeat_age_ms: Optional[int] = None
    error_kind: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("trace")
        return data


@dataclass
class AgentRunResult:
    output: AgentRunResponse
    context: RunContext


class AgentExecutionError(ClawboxError):
    """An agent run failed before a response could be returned."""

    def __init__(self, message: str, context: RunContext, kind: str = "internal"):
        super().__init__(message)
        self.context = context
        self.kind = kind


class ExecutionCoordinator:
    def __init__(
        self,
        exchange: FileExchange,
        *,
        group_lock: Optional[GroupLock] = None,
        semaphore: Optional[AgentSemaphore] = None,
        sessions: Optional[SessionStore] = None,
        telemetry: Optional[TelemetrySink] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        heartbeat_stale_ms: int = DEFAULT_HEARTBEAT_STALE_MS,
    ):
        self.exchange = exchange
        self.group_lock = group_lock or GroupLock()
        self.semaphore = semaphore or AgentSemaphore(1)
        self.sessions = sessions
        self.telemetry = telemetry
        self.timeout_ms = timeout_ms
        self.poll_interval = poll_interval
        self.heartbeat_stale_ms = heartbeat_stale_ms
        self.exchange.ensure_dirs()

    async def execute_agent_run(self, params: AgentRunParams) -> AgentRunResult:
        """Run one agent request end to end.

        Raises:
            AgentExecutionError: timeout, abort, unreadable response, full
                queue or any other failure; ``kind`` says which.
        """
        trace = create_trace_base(
            chat_id=params.channel_id,
            group_key=params.group_key,
            user_id=params.user_id,
            input_text=params.prompt,
            source=params.source,
        )
        is_main = params.is_main if params.is_main is not None else params.group_key == MAIN_GROUP_KEY
        context = RunContext(
            trace=trace,
            request_id=f"run-{uuid.uuid4().hex}",
            group_key=params.group_key,
            is_main=is_main,
            is_scheduled=params.is_scheduled,
            is_background=params.is_background,
        )

        output: Optional[AgentRunResponse] = None
        error: Optional[BaseException] = None
        try:
            output = await self._admit_and_run(params, context)
            if output.status == "error":
                context.error_kind = "agent_error"
                logger.warning("Agent run %s for %s reported an error: %s",
                               context.request_id, params.group_key, output.error)
            if output.new_session_id and params.persist_session:
                self._persist_session(params, output.new_session_id)
            return AgentRunResult(output=output, context=context)
        except asyncio.CancelledError as e:
            error = e
            context.error_kind = "aborted"
            raise
        except Exception as e:
            error = e
            context.error_kind = classify_error(e)
            logger.log(log_level_for(e), "Agent run %s for %s failed (%s): %s",
                       context.request_id, params.group_key, context.error_kind, e)
            raise AgentExecutionError(str(e) or type(e).__name__, context, context.error_kind) from e
        finally:
            self._finalize(trace, output, context, error)

    def _persist_session(self, params: AgentRunParams, session_id: str) -> None:
        """Record a new continuity id. Failures here never undo a finished run."""
        if self.sessions is not None:
            try:
                self.sessions.set(params.group_key, session_id)
            except OSError as e:
                logger.warning("Could not persist session for %s: %s", params.group_key, e)
        if params.on_session_update is not None:
            try:
                params.on_session_update(session_id)
            except Exception:
                logger.warning("Session update callback failed for %s", params.group_key, exc_info=True)

    async def _admit_and_run(self, params: AgentRunParams, context: RunContext) -> AgentRunResponse:
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with AsyncExitStack() as stack:
            if params.use_group_lock:
                await stack.enter_async_context(self.group_lock.hold(params.group_key))
            locked = loop.time()
            context.lock_wait_ms = int((locked - started) * 1000)

            await stack.enter_async_context(self.semaphore.acquire())
            context.semaphore_wait_ms = int((loop.time() - locked) * 1000)

            return await self._exchange(self._build_request(params, context), params, context)

    def _build_request(self, params: AgentRunParams, context: RunContext) -> AgentRunRequest:
        return AgentRunRequest(
            id=context.request_id,
            prompt=params.prompt,
            group_key=params.group_key,
            channel_id=params.channel_id,
            is_main=context.is_main,
            is_scheduled=params.is_scheduled,
            is_background=params.is_background,
            session_id=params.session_id,
            user_id=params.user_id,
            task_id=params.task_id,
            attachments=tuple(params.attachments),
            streaming=params.streaming,
            timeouts=RunTimeouts(run_ms=params.timeout_ms or self.timeout_ms),
        )

    async def _exchange(
        self,
        request: AgentRunRequest,
        params: AgentRunParams,
        context: RunContext,
    ) -> AgentRunResponse:
        if params.abort is not None and params.abort.is_set():
            raise RunAborted(f"Agent run {request.id} aborted before submission")

        age = self.exchange.heartbeat_age_ms()
        context.heartbeat_age_ms = age
        if age is None or age > self.heartbeat_stale_ms:
            logger.warning("Sandbox heartbeat is stale (%s ms); submitting %s anyway",
                           "never" if age is None else age, request.id)

        loop = asyncio.get_running_loop()
        started = loop.time()
        self.exchange.submit(request)
        try:
            return await self.exchange.wait_for_response(
                request.id,
                timeout_ms=params.timeout_ms or self.timeout_ms,
                poll_interval=self.poll_interval,
                abort=params.abort,
            )
        except (TransportTimeout, RunAborted, asyncio.CancelledError):
            if self.exchange.withdraw(request.id):
                logger.info("Withdrew unclaimed request %s", request.id)
            raise
        finally:
            context.exchange_ms = int((loop.time() - started) * 1000)

    def _finalize(
        self,
        trace: TraceBase,
        output: Optional[AgentRunResponse],
        context: RunContext,
        error: Optional[BaseException],
    ) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.finalize(
                trace,
                output,
                context,
                error_kind=context.error_kind if error is not None else None,
                error_message=(str(error) or type(error).__name__) if error is not None else None,
            )
        except Exception:
            # Telemetry never changes the outcome of a run
            logger.exception("Telemetry finalize failed for %s", trace.trace_id)

    def sweep_orphan_responses(self, max_age_s: float) -> int:
        return self.exchange.sweep_orphan_responses(max_age_s)
