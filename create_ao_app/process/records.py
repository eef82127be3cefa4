"""Durable records for the supervised worker and the foreground scheduler.

Each record is a single small JSON file in the user's home directory.  A
record states what was started and when.  It does not prove the process is
still alive, so callers that act on one must tolerate a pid that no longer
exists.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProcessRecord(BaseModel):
    """Identity of the worker process started by ``ProcessSupervisor.start``."""

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    name: str
    start_time: str = Field(default_factory=_now_iso, alias="startTime")
    config_path: str = Field(alias="configPath")


class ScheduleRecord(BaseModel):
    """Identity of a foreground ``schedule`` command, so ``schedule-stop``
    can signal it from another shell."""

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    process_name: str | None = Field(default=None, alias="processName")
    interval: int
    tick: str
    start_time: str = Field(default_factory=_now_iso, alias="startTime")


RecordT = TypeVar("RecordT", bound=BaseModel)


class RecordStore(Generic[RecordT]):
    """Reads and writes one record of type ``RecordT`` at a fixed path.

    There is no locking: two CLI invocations racing on the same file can
    lose an update.
    """

    def __init__(self, path: str | Path, model: type[RecordT]) -> None:
        self.path = Path(path)
        self.model = model

    def read(self) -> RecordT | None:
        """Return the stored record, or ``None`` if missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            return self.model.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            # Corrupt or half-written record -- treat as no record.
            return None

    def write(self, record: RecordT) -> None:
        """Replace the stored record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            record.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
        )

    def clear(self) -> bool:
        """Delete the record.  Returns ``False`` if there was none."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def pid_alive(pid: int) -> bool:
    """Best-effort check whether *pid* names a live process."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    return True
