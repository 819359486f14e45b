"""
Run telemetry: per-run trace records and Prometheus metrics.

Every agent run produces exactly one trace line in
``~/.clawbox/traces/trace-YYYY-MM-DD.jsonl`` and one set of metric updates.
Both happen in :meth:`TelemetrySink.finalize`, which the coordinator calls
from its ``finally`` block.
"""

import json
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Histogram

from agent.protocol import AgentRunFailure, AgentRunSuccess
from clawbox_constants import DEFAULT_TRACES_DIR

logger = logging.getLogger(__name__)

AgentRunResponse = Union[AgentRunSuccess, AgentRunFailure]

LATENCY_BUCKETS = (0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900, 1800)


@dataclass(frozen=True)
class TraceBase:
    trace_id: str
    timestamp: str
    created_at: int
    chat_id: str
    group_folder: str
    user_id: Optional[str]
    input_text: str
    source: str


def create_trace_base(
    chat_id: str,
    group_key: str,
    user_id: Optional[str],
    input_text: str,
    source: str = "message",
) -> TraceBase:
    created_at = int(time.time() * 1000)
    return TraceBase(
        trace_id=f"trace-{created_at}-{secrets.token_hex(4)}",
        timestamp=datetime.fromtimestamp(created_at / 1000, tz=timezone.utc).isoformat(),
        created_at=created_at,
        chat_id=chat_id,
        group_folder=group_key,
        user_id=user_id,
        input_text=input_text,
        source=source,
    )


class TraceWriter:
    """Appends trace records to one JSONL file per UTC day."""

    def __init__(self, traces_dir: Union[str, Path] = DEFAULT_TRACES_DIR):
        self.traces_dir = Path(traces_dir)
        self._lock = threading.Lock()

    def path_for(self, created_at_ms: int) -> Path:
        day = datetime.fromtimestamp(created_at_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        return self.traces_dir / f"trace-{day}.jsonl"

    def write(self, record: Dict[str, Any]) -> Path:
        path = self.path_for(record.get("created_at") or int(time.time() * 1000))
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        return path


class AgentMetrics:
    """Prometheus instruments for agent runs, bound to one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.runs = Counter(
            "clawbox_agent_runs_total",
            "Agent runs by source and final status",
            ["source", "status"],
            registry=self.registry,
        )
        self.errors = Counter(
            "clawbox_agent_errors_total",
            "Failed agent runs by error kind",
            ["kind"],
            registry=self.registry,
        )
        self.tokens = Counter(
            "clawbox_agent_tokens_total",
            "Model tokens consumed",
            ["model", "source", "direction"],
            registry=self.registry,
        )
        self.tool_calls = Counter(
            "clawbox_tool_calls_total",
            "Tool calls reported by the sandbox",
            ["tool", "ok"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "clawbox_agent_run_seconds",
            "End-to-end agent run latency",
            ["source"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

    def record(
        self,
        source: str,
        status: str,
        latency_ms: Optional[int],
        output: Optional[AgentRunResponse],
        error_kind: Optional[str],
    ) -> None:
        self.runs.labels(source=source, status=status).inc()
        if error_kind or status == "agent_error":
            self.errors.labels(kind=error_kind or "agent_error").inc()
        if latency_ms is not None:
            self.latency.labels(source=source).observe(latency_ms / 1000)
        if output is None:
            return
        model = output.model or "unknown"
        if output.tokens_prompt:
            self.tokens.labels(model=model, source=source, direction="prompt").inc(output.tokens_prompt)
        if output.tokens_completion:
            self.tokens.labels(model=model, source=source, direction="completion").inc(output.tokens_completion)
        for call in output.tool_calls:
            self.tool_calls.labels(tool=call.name, ok=str(call.ok).lower()).inc()


class TelemetrySink:
    """Where finished runs are reported. One :meth:`finalize` per run."""

    def __init__(self, writer: Optional[TraceWriter] = None, metrics: Optional[AgentMetrics] = None):
        self.writer = writer
        self.metrics = metrics

    def finalize(
        self,
        trace_base: TraceBase,
        output: Optional[AgentRunResponse],
        context: Any = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the trace record, write it and update metrics.

        I/O failures are logged and swallowed; a broken traces directory
        must never change the outcome of a run.
        """
        latency_ms = int(time.time() * 1000) - trace_base.created_at
        if error_kind:
            status = "error"
        elif output is not None and output.status == "error":
            status = "agent_error"
        else:
            status = "success"

        record: Dict[str, Any] = asdict(trace_base)
        record.update(
            status=status,
            latency_ms=latency_ms,
            error_kind=error_kind,
            error=error_message,
        )
        if output is not None:
            record.update(
                output_text=output.result,
                model_id=output.model,
                tokens_prompt=output.tokens_prompt,
                tokens_completion=output.tokens_completion,
                tool_calls=[c.model_dump() for c in output.tool_calls],
                worker_latency_ms=output.latency_ms,
            )
            if output.status == "error":
                record["error"] = output.error
        if context is not None and hasattr(context, "as_dict"):
            record["context"] = context.as_dict()

        if self.writer is not None:
            try:
                self.writer.write(record)
            except OSError as e:
                logger.warning("Failed to write trace %s: %s", trace_base.trace_id, e)
        if self.metrics is not None:
            try:
                self.metrics.record(trace_base.source, status, latency_ms, output, error_kind)
            except ValueError as e:
                logger.warning("Failed to record metrics for %s: %s", trace_base.trace_id, e)
        return record
