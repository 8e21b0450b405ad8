"""In-memory tracking for background work started from the API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Any, List
from uuid import uuid4

logger = logging.getLogger(__name__)

JOB_STATUSES: tuple[str, ...] = ("pending", "running", "completed", "failed")


@dataclass(slots=True)
class Job:
    id: str
    kind: str
    subject_id: str
    status: str
    created_at: str
    updated_at: str
    total: int | None = None
    processed: int = 0
    error: str | None = None
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "subject_id": self.subject_id,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "total": self.total,
            "processed": self.processed,
            "error": self.error,
            "result": self.result,
        }


class JobManager:
    """Track the status and progress of background jobs."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create_job(self, kind: str, subject_id: str) -> Job:
        now = self._now()
        job = Job(
            id=uuid4().hex,
            kind=kind,
            subject_id=subject_id,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
        logger.info("job.created id=%s kind=%s subject=%s", job.id, kind, subject_id)
        return job

    def mark_running(self, job_id: str, *, total: int | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = "running"
            job.updated_at = self._now()
            if total is not None:
                job.total = total

    def update_progress(self, job_id: str, *, processed: int, total: int | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.processed = processed
            if total is not None:
                job.total = total
            job.updated_at = self._now()

    def mark_completed(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = "completed"
            job.result = result
            job.error = None
            if job.total is not None:
                job.processed = job.total
            job.updated_at = self._now()
        logger.info("job.completed id=%s", job_id)

    def mark_failed(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = "failed"
            job.error = error
            job.updated_at = self._now()
        logger.warning("job.failed id=%s error=%s", job_id, error)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_for_subject(self, subject_id: str) -> List[Job]:
        with self._lock:
            jobs = [job for job in self._jobs.values() if job.subject_id == subject_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = ["JOB_STATUSES", "Job", "JobManager"]
