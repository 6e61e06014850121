# -*- coding: utf-8 -*-
"""
MultPanel Bulk Jobs - Layer 3
Job records, per-target results and the in-memory job store.

The store is process-local. A restart while a job is running loses that job:
the UI keeps polling, gets a 404 and stops. Finished jobs are summarized to
the bulk_operations table by the coordinator, running ones are not persisted.
"""

import time
import uuid
import logging
import threading
from datetime import datetime

from multpanel.core.errors import JobNotFoundError, InvalidTransition


class JobStatus:
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'

    TERMINAL = (COMPLETED, FAILED)

    # forward edges only
    TRANSITIONS = {
        PENDING: (IN_PROGRESS,),
        IN_PROGRESS: (COMPLETED, FAILED),
        COMPLETED: (),
        FAILED: (),
    }

    @classmethod
    def can_transition(cls, current, new):
        return new in cls.TRANSITIONS.get(current, ())


class TargetResult:
    """Outcome for one target. Use the subclasses, instances are never changed -
    the coordinator swaps the whole entry when a target finishes."""

    status = None

    def __init__(self, target_id, target_name=None):
        self._target_id = target_id
        self._target_name = target_name

    @property
    def target_id(self):
        return self._target_id

    @property
    def target_name(self):
        return self._target_name

    @property
    def message(self):
        return None

    @property
    def artifact_id(self):
        return None

    @property
    def is_done(self):
        return self.status != PendingResult.status

    def to_dict(self):
        return {
            'targetId': self._target_id,
            'targetName': self._target_name,
            'status': self.status,
            'message': self.message,
            'producedArtifactId': self.artifact_id,
        }

    def __repr__(self):
        return f"<{self.__class__.__name__} target={self._target_id} message={self.message!r}>"


class PendingResult(TargetResult):
    status = 'pending'


class SuccessResult(TargetResult):
    status = 'success'

    def __init__(self, target_id, message='', artifact_id=None, target_name=None):
        super().__init__(target_id, target_name)
        self._message = message or 'OK'
        self._artifact_id = artifact_id

    @property
    def message(self):
        return self._message

    @property
    def artifact_id(self):
        return self._artifact_id


class FailedResult(TargetResult):
    status = 'failed'

    def __init__(self, target_id, message, target_name=None):
        super().__init__(target_id, target_name)
        self._message = message or 'Unknown error'

    @property
    def message(self):
        return self._message


def _iso(dt):
    return dt.isoformat() if dt else None


class BulkJob:
    """One submitted bulk operation.

    Only the JobStore touches a live job (under its lock), everything else
    works on the dict snapshots from to_dict().
    """

    def __init__(self, kind, target_ids, source_id=None, params=None, initiated_by='system',
                 target_names=None, job_id=None):
        target_ids = list(target_ids)
        if len(set(target_ids)) != len(target_ids):
            raise ValueError('duplicate target ids')
        names = target_names or {}

        self.id = job_id or f"{kind.replace('_', '-')}-{uuid.uuid4().hex[:12]}"
        self.kind = kind
        self.source_id = source_id
        self.params = dict(params or {})
        self.initiated_by = initiated_by
        self.status = JobStatus.PENDING
        self.results = [PendingResult(tid, names.get(tid)) for tid in target_ids]
        self.created_at = datetime.now()
        self.started_at = None
        self.completed_at = None
        self.error = None

    @property
    def target_ids(self):
        return [r.target_id for r in self.results]

    @property
    def progress(self) -> int:
        # always derived from results, never stored
        if not self.results:
            return 100 if self.status == JobStatus.COMPLETED else 0
        done = sum(1 for r in self.results if r.is_done)
        return int(round(100 * done / len(self.results)))

    @property
    def pending_count(self) -> int:
        return sum(1 for r in self.results if not r.is_done)

    @property
    def is_terminal(self):
        return self.status in JobStatus.TERMINAL

    def set_status(self, status, error=None):
        if not JobStatus.can_transition(self.status, status):
            raise InvalidTransition(f"{self.id}: {self.status} -> {status}")
        self.status = status
        if status == JobStatus.IN_PROGRESS:
            self.started_at = datetime.now()
        elif status in JobStatus.TERMINAL:
            self.completed_at = datetime.now()
            if status == JobStatus.FAILED:
                self.error = error or 'Job failed'

    def apply_result(self, result):
        """replace the placeholder for result.target_id, returns True when that was the last one"""
        if not isinstance(result, (SuccessResult, FailedResult)):
            raise ValueError(f"not a final result: {result!r}")
        for i, current in enumerate(self.results):
            if current.target_id == result.target_id:
                if current.is_done:
                    raise ValueError(f"target {result.target_id} already resolved")
                if result.target_name is None and current.target_name is not None:
                    result = _with_name(current, result)
                self.results[i] = result
                return self.pending_count == 0
        raise ValueError(f"target {result.target_id} is not part of job {self.id}")

    def summary(self):
        succeeded = sum(1 for r in self.results if r.status == SuccessResult.status)
        failed = sum(1 for r in self.results if r.status == FailedResult.status)
        return {
            'total': len(self.results),
            'succeeded': succeeded,
            'failed': failed,
            'pending': len(self.results) - succeeded - failed,
        }

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'status': self.status,
            'progress': self.progress,
            'sourceId': self.source_id,
            'targetIds': self.target_ids,
            'params': dict(self.params),
            'results': [r.to_dict() for r in self.results],
            'summary': self.summary(),
            'initiatedBy': self.initiated_by,
            'createdAt': _iso(self.created_at),
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
            'error': self.error,
        }


def _with_name(placeholder, result):
    """executors don't always know the cluster name, keep the one from submission"""
    if isinstance(result, SuccessResult):
        return SuccessResult(result.target_id, result.message, result.artifact_id, placeholder.target_name)
    return FailedResult(result.target_id, result.message, placeholder.target_name)


class JobStore:
    """In-memory job registry, one lock per job.

    The coordinator is the only writer for a job; pollers only ever get
    snapshots built under the job's lock, so a half-applied result is never
    visible.
    """

    def __init__(self):
        self._jobs = {}
        self._locks = {}
        self._registry_lock = threading.Lock()

    def __len__(self):
        with self._registry_lock:
            return len(self._jobs)

    def __contains__(self, job_id):
        with self._registry_lock:
            return job_id in self._jobs

    def _entry(self, job_id):
        with self._registry_lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job, self._locks[job_id]

    def create(self, job) -> str:
        with self._registry_lock:
            if job.id in self._jobs:
                raise ValueError(f"job {job.id} already exists")
            self._jobs[job.id] = job
            self._locks[job.id] = threading.Lock()
        return job.id

    def get(self, job_id) -> dict:
        job, lock = self._entry(job_id)
        with lock:
            return job.to_dict()

    def update(self, job_id, mutation):
        """run mutation(job) under the job lock, returns (mutation return value, snapshot)"""
        job, lock = self._entry(job_id)
        with lock:
            ret = mutation(job)
            return ret, job.to_dict()

    def transition(self, job_id, status, error=None) -> dict:
        _, snapshot = self.update(job_id, lambda job: job.set_status(status, error))
        return snapshot

    def set_result(self, job_id, result) -> dict:
        """apply one target result; completes the job when it was the last pending target"""
        def _apply(job):
            last = job.apply_result(result)
            if last and job.status == JobStatus.IN_PROGRESS:
                job.set_status(JobStatus.COMPLETED)
            return last

        _, snapshot = self.update(job_id, _apply)
        return snapshot

    def list(self) -> list:
        with self._registry_lock:
            entries = [(job, self._locks[job_id]) for job_id, job in self._jobs.items()]
        snapshots = []
        for job, lock in entries:
            with lock:
                snapshots.append(job.to_dict())
        snapshots.sort(key=lambda j: j['startedAt'] or j['createdAt'] or '', reverse=True)
        return snapshots

    def purge(self, max_age: float, now: float = None) -> int:
        """drop terminal jobs that finished more than max_age seconds ago"""
        now = now if now is not None else time.time()
        removed = 0
        with self._registry_lock:
            for job_id in list(self._jobs.keys()):
                job = self._jobs[job_id]
                with self._locks[job_id]:
                    if not job.is_terminal or job.completed_at is None:
                        continue
                    if now - job.completed_at.timestamp() < max_age:
                        continue
                del self._jobs[job_id]
                del self._locks[job_id]
                removed += 1
        if removed:
            logging.info(f"[BulkOps] Purged {removed} finished job(s) from memory")
        return removed
