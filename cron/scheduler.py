"""
Scheduled job runner - executes due jobs through the agent coordinator.

This module provides:
- run_job(): run one job, returning its outcome and retry decision
- tick(): run a list of due jobs one after another
- retry_delay_ms(): exponential backoff for failed jobs

Deciding *when* a job is due (cron expressions, calendars) is the caller's
business; tick() only runs what it is handed.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from agent.ipc import atomic_write_text
from clawbox_constants import CLAWBOX_HOME
from gateway.config import SchedulerConfig
from gateway.execution import AgentExecutionError, AgentRunParams, ExecutionCoordinator
from gateway.session_store import SessionStore

logger = logging.getLogger(__name__)

OUTPUT_DIR = CLAWBOX_HOME / "cron" / "output"
RESULT_SUMMARY_CHARS = 200


@dataclass
class ScheduledJob:
    id: str
    group_key: str
    channel_id: str
    prompt: str
    name: str = ""
    # "isolated": fresh agent session every run; "group": share the group's session
    context_mode: str = "isolated"
    schedule_type: str = "once"
    schedule_value: str = ""
    state_json: Optional[str] = None
    retry_count: int = 0


@dataclass
class JobRunResult:
    job_id: str
    status: str
    result: Optional[str]
    error: Optional[str]
    duration_ms: int
    retry_count: int
    retry_delay_ms: Optional[int] = None
    next_run_ms: Optional[int] = None
    summary: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"


def retry_delay_ms(retry_count: int, base_ms: int, max_ms: int) -> int:
    """Backoff before retry number *retry_count* (1-based)."""
    return min(max_ms, base_ms * 2 ** max(0, retry_count - 1))


def build_job_prompt(job: ScheduledJob) -> str:
    if not job.state_json:
        return job.prompt
    return f"[TASK STATE]\n{job.state_json}\n\n{job.prompt}"


def _next_scheduled_run(job: ScheduledJob, now_ms: int) -> Optional[int]:
    """Next run for interval jobs; None for one-shot jobs and externally scheduled ones."""
    if job.schedule_type != "interval":
        return None
    try:
        interval = int(job.schedule_value)
    except ValueError:
        interval = 0
    if interval <= 0:
        logger.warning("Job %s has an invalid interval %r", job.id, job.schedule_value)
        return None
    return now_ms + interval


async def run_job(
    job: ScheduledJob,
    coordinator: ExecutionCoordinator,
    continuity: Optional[SessionStore] = None,
    policy: Optional[SchedulerConfig] = None,
) -> JobRunResult:
    """Execute a single scheduled job.

    The run is marked scheduled so the sandbox can tell it apart from chat
    traffic. Failures (raised or reported by the agent) consume a retry while
    any are left; the returned ``retry_delay_ms`` says when to try again.
    """
    policy = policy or SchedulerConfig()
    shared_context = job.context_mode == "group" and continuity is not None
    started = time.monotonic()

    logger.info("Running job %s (%s) for %s", job.id, job.name or job.prompt[:60], job.group_key)

    result: Optional[str] = None
    error: Optional[str] = None
    try:
        execution = await coordinator.execute_agent_run(AgentRunParams(
            group_key=job.group_key,
            channel_id=job.channel_id,
            prompt=build_job_prompt(job),
            session_id=continuity.get(job.group_key) if shared_context else None,
            persist_session=shared_context,
            on_session_update=(lambda sid: continuity.set(job.group_key, sid)) if shared_context else None,
            is_scheduled=True,
            task_id=job.id,
            source="scheduler",
        ))
        output = execution.output
        if output.status == "error":
            error = output.error or "Unknown error"
        else:
            result = output.result
    except AgentExecutionError as e:
        error = str(e)
        logger.error("Job %s failed (%s): %s", job.id, e.kind, error)

    duration_ms = int((time.monotonic() - started) * 1000)
    now_ms = int(time.time() * 1000)
    next_run = _next_scheduled_run(job, now_ms)

    retry_count = job.retry_count
    delay: Optional[int] = None
    if error:
        if retry_count < policy.max_retries:
            retry_count += 1
            delay = retry_delay_ms(retry_count, policy.retry_base_ms, policy.retry_max_ms)
            next_run = now_ms + delay
            logger.info("Job %s will retry in %d ms (attempt %d/%d)",
                        job.id, delay, retry_count, policy.max_retries)
    else:
        retry_count = 0
        logger.info("Job %s completed in %d ms", job.id, duration_ms)

    summary = f"Error: {error}" if error else (result[:RESULT_SUMMARY_CHARS] if result else "Completed")
    return JobRunResult(
        job_id=job.id,
        status="error" if error else "success",
        result=result,
        error=error,
        duration_ms=duration_ms,
        retry_count=retry_count,
        retry_delay_ms=delay,
        next_run_ms=next_run,
        summary=summary,
    )


def save_job_output(job: ScheduledJob, outcome: JobRunResult, output_dir: Path = OUTPUT_DIR) -> Path:
    """Write a markdown record of one job run and return its path."""
    run_time = datetime.now()
    body = outcome.result if outcome.ok else f"```\n{outcome.error}\n```"
    document = (
        f"# Scheduled Job: {job.name or job.id}{'' if outcome.ok else ' (FAILED)'}\n\n"
        f"**Job ID:** {job.id}\n"
        f"**Run Time:** {run_time.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"**Duration:** {outcome.duration_ms} ms\n\n"
        f"## Prompt\n\n{job.prompt}\n\n"
        f"## {'Response' if outcome.ok else 'Error'}\n\n{body or '(No response generated)'}\n"
    )
    path = Path(output_dir) / job.id / f"{run_time.strftime('%Y-%m-%d_%H-%M-%S')}.md"
    atomic_write_text(path, document)
    return path


async def tick(
    due_jobs: Iterable[ScheduledJob],
    coordinator: ExecutionCoordinator,
    continuity: Optional[SessionStore] = None,
    policy: Optional[SchedulerConfig] = None,
    output_dir: Optional[Path] = None,
) -> List[JobRunResult]:
    """Run every due job once, in order. One failing job never stops the rest."""
    jobs = list(due_jobs)
    if not jobs:
        logger.debug("No jobs due")
        return []

    logger.info("%d job(s) due", len(jobs))
    outcomes = []
    for job in jobs:
        outcome = await run_job(job, coordinator, continuity, policy)
        if output_dir is not None:
            try:
                save_job_output(job, outcome, output_dir)
            except OSError as e:
                logger.warning("Could not save output for job %s: %s", job.id, e)
        outcomes.append(outcome)
    return outcomes
