"""Shared fixtures: temp database, isolated job store/coordinator, fake operations, Flask client."""
import threading

import pytest

from multpanel import globals as g
from multpanel.core.coordinator import BulkCoordinator
from multpanel.core.db import MultPanelDB
from multpanel.core.errors import PreconditionError
from multpanel.core.jobs import JobStore, SuccessResult, FailedResult
from multpanel.core.keys import SSHKeyManager
from multpanel.core.operations import BulkOperation, default_operations


class FakeOperation(BulkOperation):
    """Scriptable operation, no network.

    outcomes maps cluster id -> 'ok' | 'fail' | 'raise' | 'hang' | 'commit_then_hang';
    default 'ok'. committed / rejected record what attempt.commit() answered.
    """
    kind = 'fake_op'

    def __init__(self, outcomes=None, concurrent=True, fail_prepare=None, targets_default_all=False, db=None):
        super().__init__(db)
        self.outcomes = outcomes or {}
        self.concurrent = concurrent
        self.targets_default_all = targets_default_all
        self.fail_prepare = fail_prepare
        self.calls = []
        self.finalized = []
        self.committed = []
        self.rejected = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def prepare(self, job):
        if self.fail_prepare:
            raise PreconditionError(self.fail_prepare)
        return {'job_id': job['id']}

    def execute(self, context, cluster, attempt):
        cid = cluster['id']
        with self._lock:
            self.calls.append(cid)
        outcome = self.outcomes.get(cid, 'ok')
        if outcome == 'fail':
            return FailedResult(cid, f"cluster {cid} refused")
        if outcome == 'raise':
            raise RuntimeError(f"boom on {cid}")
        if outcome == 'hang':
            self.release.wait(10)
            self._commit(cid, attempt)
            return SuccessResult(cid, 'too late')
        if outcome == 'commit_then_hang':
            self._commit(cid, attempt)
            self.release.wait(10)
            return SuccessResult(cid, 'slow bookkeeping')
        self._commit(cid, attempt)
        return SuccessResult(cid, 'done', artifact_id=cid * 100)

    def _commit(self, cid, attempt):
        committed = attempt.commit()
        with self._lock:
            if committed:
                self.committed.append(cid)
            else:
                self.rejected.append(cid)

    def finalize(self, context, job):
        self.finalized.append(job['summary'])


def add_cluster(db, name, status='active', host=None):
    return db.add_cluster({
        'name': name,
        'host': host or f'{name}.example.net',
        'user': 'root@pam',
        'pass': f'{name}-secret',
        'status': status,
    })


@pytest.fixture
def db(tmp_path):
    database = MultPanelDB(str(tmp_path / 'multpanel.db'))
    yield database
    database.close()


@pytest.fixture
def cluster_ids(db):
    """three active clusters A, B, C"""
    return [add_cluster(db, name) for name in ('alpha', 'bravo', 'charlie')]


@pytest.fixture
def key_manager(tmp_path):
    return SSHKeyManager(ssh_dir=str(tmp_path / 'ssh'), bits=2048)


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def fake_op(db):
    op = FakeOperation(db=db)
    yield op
    op.release.set()


@pytest.fixture
def coordinator(store, fake_op, db):
    return BulkCoordinator(store, {fake_op.kind: fake_op}, db=db, target_timeout=2, max_workers=4)


@pytest.fixture
def app(db, store, key_manager, fake_op, monkeypatch):
    from multpanel.app import create_app

    monkeypatch.setattr(g, 'api_tokens', set())
    operations = default_operations(db, key_manager)
    operations[fake_op.kind] = fake_op
    coord = BulkCoordinator(store, operations, db=db, target_timeout=2, max_workers=4)

    monkeypatch.setattr('multpanel.core.db._db', db)
    application = create_app(db=db, job_store=store, coordinator=coord, key_manager=key_manager)
    application.config['TESTING'] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()
