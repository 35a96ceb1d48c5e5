"""
Tracking capability carried by host job payloads.

A job is trackable when it either *is* a `JobTracking` or exposes one as
`job.job_tracking`. Anything else is ignored by the lifecycle recorder.

Example:

    class ResizeImages:
        def __init__(self, process_id, command_name):
            self.job_tracking = JobTracking(
                process_id=process_id,
                command_name=command_name,
                job_type="images",
            )
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class JobTracking:
    process_id: Optional[str] = None
    command_name: Optional[str] = None
    job_type: Optional[str] = None
    created_at: Optional[float] = None
    started_at: Optional[float] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = time.time()

    def mark_job_started(self, now: Optional[float] = None) -> None:
        self.started_at = time.time() if now is None else now

    def queue_time(self) -> float:
        """Seconds between creation and start; 0 until the job has started."""
        if self.created_at is None or self.started_at is None:
            return 0.0
        return max(0.0, self.started_at - self.created_at)


def tracking_of(job: Any) -> Optional[JobTracking]:
    if isinstance(job, JobTracking):
        return job
    candidate = getattr(job, "job_tracking", None)
    if isinstance(candidate, JobTracking):
        return candidate
    return None
