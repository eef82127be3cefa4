"""create-ao-app process module.

Runs the AO worker next to a project's dev server: starting and stopping it,
sequencing it after the dev server is reachable, ticking it on a schedule,
and wrapping its one-shot commands.

Key classes:
    ProcessSupervisor   - Worker lifecycle, eval/monitor/watch/list/cron
    Scheduler           - Periodic tick with bounded retries
    DevServerSequencer  - Dev server start, readiness wait, worker hand-off
    LaunchSpec          - Resolved worker start parameters
    RecordStore         - JSON persistence for process/schedule records
"""

from .devserver import DevServerHandle, DevServerSequencer, extract_url
from .errors import (
    DevServerExited,
    EvalNonZeroExit,
    EvalTimeout,
    ProcessAlreadyRunning,
    ProcessError,
    ReadinessFailed,
    ReadinessStreamClosed,
    ReadinessTimeout,
    SchedulerAlreadyRunning,
    SpawnFailed,
    WorkerCommandFailed,
)
from .launch import LaunchSpec
from .pattern import Matcher
from .readiness import ReadinessResult, await_signal
from .records import ProcessRecord, RecordStore, ScheduleRecord
from .scheduler import Scheduler, SchedulerState
from .supervisor import (
    EvalResult,
    ProcessDescriptor,
    ProcessState,
    ProcessSupervisor,
    RunningHandle,
    find_worker_files,
)

__all__ = [
    # Supervisor
    "ProcessSupervisor",
    "ProcessState",
    "RunningHandle",
    "EvalResult",
    "ProcessDescriptor",
    "find_worker_files",
    # Scheduling
    "Scheduler",
    "SchedulerState",
    # Dev server
    "DevServerSequencer",
    "DevServerHandle",
    "extract_url",
    # Primitives
    "LaunchSpec",
    "Matcher",
    "ReadinessResult",
    "await_signal",
    # Persistence
    "RecordStore",
    "ProcessRecord",
    "ScheduleRecord",
    # Errors
    "ProcessError",
    "SpawnFailed",
    "ProcessAlreadyRunning",
    "SchedulerAlreadyRunning",
    "ReadinessFailed",
    "ReadinessTimeout",
    "ReadinessStreamClosed",
    "EvalTimeout",
    "EvalNonZeroExit",
    "WorkerCommandFailed",
    "DevServerExited",
]
