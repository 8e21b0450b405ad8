from __future__ import annotations

from skillbase.jobs import JobManager


def test_job_lifecycle() -> None:
    manager = JobManager()
    job = manager.create_job("answer", "project-1")
    assert job.status == "pending"

    manager.mark_running(job.id, total=4)
    manager.update_progress(job.id, processed=2)
    running = manager.get(job.id)
    assert running.status == "running"
    assert (running.processed, running.total) == (2, 4)

    manager.mark_completed(job.id, {"answered": 4})
    completed = manager.get(job.id).to_dict()
    assert completed["status"] == "completed"
    assert completed["processed"] == 4
    assert completed["result"] == {"answered": 4}


def test_failed_jobs_and_listing() -> None:
    manager = JobManager()
    first = manager.create_job("answer", "project-1")
    manager.create_job("generate", "session-1")

    manager.mark_failed(first.id, "backend down")
    manager.mark_failed("unknown", "ignored")

    assert manager.get(first.id).error == "backend down"
    assert [job.id for job in manager.list_for_subject("project-1")] == [first.id]
    assert manager.get("unknown") is None
