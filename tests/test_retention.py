"""Retention pass: finished jobs leave memory, running ones stay."""
from datetime import datetime, timedelta

from multpanel.background.retention import run_retention_once, start_retention_thread
from multpanel.core.jobs import BulkJob, JobStatus, JobStore


def test_retention_pass_drops_expired_jobs(db):
    store = JobStore()
    finished = BulkJob('iso_sync', [1])
    running = BulkJob('iso_sync', [2])
    for job in (finished, running):
        store.create(job)
        store.transition(job.id, JobStatus.IN_PROGRESS)
    store.transition(finished.id, JobStatus.FAILED, 'x')
    finished.completed_at = datetime.now() - timedelta(days=2)

    assert run_retention_once(store, max_age=3600, db=db) == 1
    assert finished.id not in store
    assert running.id in store


def test_retention_thread_is_daemon(db):
    thread = start_retention_thread(JobStore(), interval=3600, max_age=60, db=db)
    assert thread.daemon
    assert thread.is_alive()
