from __future__ import annotations

import contextlib
import os
import secrets
import string
import time
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from vcopilot.atomic_io import atomic_write_json, read_json

JOB_DISPATCHED = "dispatched"
JOB_WATCHING = "watching"
JOB_COMPLETED = "completed"
JOB_ERROR = "error"

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60

_BASE36 = string.digits + string.ascii_lowercase


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> float | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except (AttributeError, ValueError):
        return None


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class InteractiveJob:
    id: str
    created_at: str
    prompt: str
    prompt_length: int
    cdp_host: str
    cdp_port: int
    extension_id: str
    page_url: str
    status: str = JOB_DISPATCHED
    watcher_pid: int | None = None
    last_heartbeat: str | None = None
    response: str | None = None
    response_length: int | None = None
    completed_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {_camel(key): value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InteractiveJob:
        kwargs = {f.name: data.get(_camel(f.name)) for f in fields(cls)}
        kwargs["extension_id"] = kwargs["extension_id"] or ""
        kwargs["page_url"] = kwargs["page_url"] or ""
        kwargs["prompt"] = kwargs["prompt"] or ""
        kwargs["prompt_length"] = int(kwargs["prompt_length"] or len(kwargs["prompt"]))
        kwargs["status"] = kwargs["status"] or JOB_DISPATCHED
        return cls(**kwargs)

    def heartbeat_age(self, now: float | None = None) -> float | None:
        if not self.last_heartbeat:
            return None
        beat = parse_timestamp(self.last_heartbeat)
        if beat is None:
            return None
        return (time.time() if now is None else now) - beat


class JobStore:
    """Job records shared between the dispatching process and the watcher."""

    def __init__(self, jobs_dir: Path):
        self._jobs_dir = Path(jobs_dir)

    @property
    def jobs_dir(self) -> Path:
        return self._jobs_dir

    @staticmethod
    def generate_id() -> str:
        stamp = _to_base36(int(time.time() * 1000))
        suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
        return f"{stamp}_{suffix}"

    def path_for(self, job_id: str) -> Path:
        return self._jobs_dir / f"{job_id}.json"

    def write(self, job: InteractiveJob) -> None:
        atomic_write_json(self.path_for(job.id), job.to_dict())

    def read(self, job_id: str) -> InteractiveJob | None:
        data = read_json(self.path_for(job_id))
        if data is None:
            return None
        try:
            return InteractiveJob.from_dict(data)
        except (TypeError, ValueError) as ex:
            logger.debug(f"Ignoring malformed job record {job_id}: {ex}")
            return None

    def update(self, job_id: str, **changes: Any) -> InteractiveJob | None:
        """Merge changes into the stored record; missing records stay missing."""
        data = read_json(self.path_for(job_id))
        if data is None:
            return None
        data.update({_camel(key): value for key, value in changes.items()})
        atomic_write_json(self.path_for(job_id), data)
        return InteractiveJob.from_dict(data)

    def cleanup_old_jobs(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        if not self._jobs_dir.is_dir():
            return 0

        now = time.time()
        removed = 0
        try:
            entries = list(os.scandir(self._jobs_dir))
        except OSError as ex:
            logger.debug(f"Job cleanup skipped: {ex}")
            return 0

        for entry in entries:
            # Temp files left behind by a writer that died before its rename.
            is_temp = entry.name.startswith(".") and entry.name.endswith(".tmp")
            if not entry.name.endswith(".json") and not is_temp:
                continue
            with contextlib.suppress(OSError):
                if now - entry.stat().st_mtime > max_age_seconds:
                    os.unlink(entry.path)
                    removed += 1

        if removed:
            logger.debug(f"Removed {removed} old job file(s)")
        return removed
