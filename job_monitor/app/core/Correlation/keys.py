"""Redis key layout for transient job/command correlation state."""

from __future__ import annotations

from typing import Optional

RUNNING_COMMANDS_KEY = "commands:running"
FINISHED_COMMANDS_KEY = "commands:finished"

JOB_HASH_PATTERN = "command:*:jobs"
COUNTERS_PATTERN = "command:metrics:*"
STANDALONE_JOB_PATTERN = "job:metrics:*"


def jobs_key(process_id: str) -> str:
    return f"command:{process_id}:jobs"


def counters_key(command_name: str, process_id: str) -> str:
    return f"command:metrics:{command_name}:{process_id}"


def pid_map_key(command_name: str) -> str:
    return f"command-pid-map:{command_name}"


def standalone_job_key(job_id: str) -> str:
    return f"job:metrics:{job_id}"


def process_id_from_jobs_key(key: str) -> Optional[str]:
    if not key.startswith("command:") or not key.endswith(":jobs"):
        return None
    inner = key[len("command:"):-len(":jobs")]
    if not inner or inner.startswith("metrics:"):
        return None
    return inner
