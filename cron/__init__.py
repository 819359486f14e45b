"""
Scheduled job execution for clawbox.

Jobs run through the same ExecutionCoordinator as chat messages, marked as
scheduled, with exponential retry backoff on failure.

Usage:
    from cron import ScheduledJob, tick
    outcomes = await tick(due_jobs, coordinator, continuity)
"""

from cron.scheduler import (
    JobRunResult,
    ScheduledJob,
    retry_delay_ms,
    run_job,
    save_job_output,
    tick,
)

__all__ = [
    "JobRunResult",
    "ScheduledJob",
    "retry_delay_ms",
    "run_job",
    "save_job_output",
    "tick",
]
