# -*- coding: utf-8 -*-
"""
MultPanel Bulk Coordinator - Layer 5
Accepts a bulk request, answers right away with a job id and runs the
fan-out in a background thread. One failing cluster never stops the others,
every target ends up with exactly one result.
"""

import logging
import threading
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, as_completed

from multpanel.constants import BULK_TARGET_TIMEOUT, BULK_MAX_WORKERS
from multpanel.core.db import get_db
from multpanel.core.errors import ValidationError, UnknownOperationError, PreconditionError
from multpanel.core.jobs import BulkJob, JobStatus, SuccessResult, FailedResult
from multpanel.core.targets import load_candidates, resolve_targets
from multpanel.utils.audit import log_audit


class TargetAttempt:
    """One executor call on one target.

    The executor calls commit() right before it writes local state (DB rows),
    the coordinator calls cancel() when the target timed out. Whichever comes
    first wins, so a target reported as timed out never gets a DB write and a
    committed one is never reported as timed out.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = None

    def commit(self) -> bool:
        with self._lock:
            if self._state is None:
                self._state = 'committed'
            return self._state == 'committed'

    def cancel(self) -> bool:
        with self._lock:
            if self._state is None:
                self._state = 'cancelled'
            return self._state == 'cancelled'

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._state == 'cancelled'


class BulkCoordinator:

    def __init__(self, store, operations: dict, db=None, target_timeout: float = None, max_workers: int = None):
        self.store = store
        self.operations = operations
        self._db = db
        self.target_timeout = target_timeout if target_timeout is not None else BULK_TARGET_TIMEOUT
        self.max_workers = max_workers or BULK_MAX_WORKERS
        self._threads = {}
        self._threads_lock = threading.Lock()

    @property
    def db(self):
        return self._db or get_db()

    def kinds(self):
        return sorted(self.operations.keys())

    def submit(self, kind, target_ids=None, source_id=None, params=None, user='system') -> dict:
        """validate + create the job, start the worker. Returns the initial snapshot.

        Raises UnknownOperationError / ValidationError, in which case no job exists.
        """
        op = self.operations.get(kind)
        if op is None:
            raise UnknownOperationError(kind)

        if source_id is not None:
            if isinstance(source_id, bool):
                raise ValidationError(f'Invalid sourceId: {source_id!r}')
            try:
                source_id = int(source_id)
            except (TypeError, ValueError):
                raise ValidationError(f'Invalid sourceId: {source_id!r}')

        params = dict(params or {})
        source_id = op.validate(source_id, params)

        if target_ids is None and not op.targets_default_all:
            raise ValidationError('targetIds is required')
        targets = resolve_targets(load_candidates(self.db), target_ids, source_id)
        if not targets:
            raise ValidationError('No target clusters selected')

        job = BulkJob(kind, [c['id'] for c in targets], source_id=source_id, params=params,
                      initiated_by=user, target_names={c['id']: c['name'] for c in targets})
        self.store.create(job)
        logging.info(f"[BulkOps] {kind} job {job.id} submitted by {user} for {len(targets)} cluster(s)")

        worker = threading.Thread(target=self.run, args=(job.id, targets), daemon=True, name=f'bulk-{job.id}')
        with self._threads_lock:
            self._threads[job.id] = worker
        worker.start()
        return self.store.get(job.id)

    def wait(self, job_id, timeout=None) -> bool:
        """block until the worker of job_id is done (tests / CLI). True when it finished."""
        with self._threads_lock:
            worker = self._threads.get(job_id)
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def run(self, job_id, targets):
        """worker thread body"""
        try:
            try:
                self._run(job_id, targets)
            except Exception as e:
                logging.error(f"[BulkOps] Job {job_id} crashed: {e}", exc_info=True)
                self._fail(job_id, f'Unexpected error: {e}')
            self._record_history(self.store.get(job_id))
        finally:
            with self._threads_lock:
                self._threads.pop(job_id, None)

    def _run(self, job_id, targets):
        snapshot = self.store.transition(job_id, JobStatus.IN_PROGRESS)
        op = self.operations[snapshot['kind']]

        try:
            context = op.prepare(snapshot)
        except PreconditionError as e:
            logging.error(f"[BulkOps] Job {job_id} aborted before any target: {e}")
            self._fail(job_id, str(e))
            return

        try:
            if op.concurrent and len(targets) > 1:
                self._fan_out_concurrent(job_id, op, context, targets)
            else:
                for cluster in targets:
                    self._run_target(job_id, op, context, cluster)
        finally:
            try:
                op.finalize(context, self.store.get(job_id))
            except Exception as e:
                logging.error(f"[BulkOps] Finalize of job {job_id} failed: {e}", exc_info=True)

        snapshot = self.store.get(job_id)
        if snapshot['status'] == JobStatus.IN_PROGRESS:
            # every target got a result through set_result, so this means one went missing
            self._fail(job_id, f"{snapshot['summary']['pending']} target(s) produced no result")

    def _fan_out_concurrent(self, job_id, op, context, targets):
        workers = min(self.max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'bulk-{job_id}') as executor:
            futures = [executor.submit(self._run_target, job_id, op, context, cluster) for cluster in targets]
            for future in as_completed(futures):
                future.result()

    def _run_target(self, job_id, op, context, cluster):
        result = self._call_executor(op, context, cluster)
        snapshot = self.store.set_result(job_id, result)
        logging.debug(f"[BulkOps] {job_id}: cluster {cluster['id']} -> {result.status} ({snapshot['progress']}%)")

    def _call_executor(self, op, context, cluster):
        """op.execute with the per-target timeout; always returns a final result for cluster"""
        cid = cluster['id']
        timeout = op.target_timeout if op.target_timeout is not None else self.target_timeout
        attempt = TargetAttempt()
        box = {}

        def _target():
            try:
                box['result'] = op.execute(context, cluster, attempt)
            except Exception as e:
                logging.error(f"[BulkOps] {op.kind} on cluster {cluster.get('name', cid)} raised: {e}", exc_info=True)
                box['result'] = FailedResult(cid, str(e) or e.__class__.__name__)

        # a hung ssh session can't be interrupted, the thread is left behind and its result dropped
        worker = threading.Thread(target=_target, daemon=True, name=f'bulk-target-{cid}')
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            if attempt.cancel():
                logging.warning(f"[BulkOps] {op.kind} on cluster {cluster.get('name', cid)} timed out after {timeout:g}s")
                return FailedResult(cid, f'Operation timed out after {timeout:g}s')
            # executor already committed, only its local bookkeeping is left
            worker.join()

        result = box.get('result')
        if not isinstance(result, (SuccessResult, FailedResult)) or result.target_id != cid:
            return FailedResult(cid, f'Executor returned no result: {result!r}')
        return result

    def _fail(self, job_id, error):
        def _mutation(job):
            if job.is_terminal:
                return False
            if job.status == JobStatus.PENDING:
                job.set_status(JobStatus.IN_PROGRESS)
            job.set_status(JobStatus.FAILED, error)
            return True

        self.store.update(job_id, _mutation)

    def _record_history(self, snapshot):
        summary = snapshot['summary']
        duration = None
        if snapshot['startedAt'] and snapshot['completedAt']:
            duration = int((datetime.fromisoformat(snapshot['completedAt']) -
                            datetime.fromisoformat(snapshot['startedAt'])).total_seconds())
        try:
            self.db.save_bulk_operation({
                'id': snapshot['id'],
                'operation_type': snapshot['kind'],
                'source_id': snapshot['sourceId'],
                'cluster_ids': snapshot['targetIds'],
                'total_clusters': summary['total'],
                'success_count': summary['succeeded'],
                'failure_count': summary['failed'],
                'results': snapshot['results'],
                'status': snapshot['status'],
                'error': snapshot['error'],
                'started_at': snapshot['startedAt'],
                'completed_at': snapshot['completedAt'],
                'duration_seconds': duration,
                'initiated_by': snapshot['initiatedBy'],
            })
        except Exception as e:
            logging.error(f"[BulkOps] Could not save history for job {snapshot['id']}: {e}")

        details = f"{snapshot['kind']} {snapshot['status']}: {summary['succeeded']}/{summary['total']} succeeded"
        if snapshot['error']:
            details += f" ({snapshot['error']})"
        log_audit(snapshot['initiatedBy'], f"bulk.{snapshot['kind']}", details, db=self.db)
        logging.info(f"[BulkOps] Job {snapshot['id']} {details}")
