"""The built-in operations end to end, with ssh/sftp/proxmox replaced by fakes."""
import os
import threading
import time

import pytest

from multpanel.constants import ISO_SYNC_TARGET_TIMEOUT, BULK_TARGET_TIMEOUT
from multpanel.core import operations as ops_module
from multpanel.core.coordinator import BulkCoordinator
from multpanel.core.errors import ValidationError, SSHKeyError
from multpanel.core.jobs import JobStore, JobStatus
from multpanel.core.operations import default_operations
from multpanel.core.proxmox import ProxmoxAPIError
from multpanel.utils.ssh import KEY_VERIFIED_MARKER, KEY_MISSING_MARKER

from conftest import add_cluster


class FakeRemote:
    """records ssh/sftp traffic per host and answers from scripted behaviour"""

    # storage id -> directory on every fake node, None for block storages
    STORAGES = {'local': '/var/lib/vz', 'nfs-iso': '/mnt/pve/nfs-iso', 'local-lvm': None}

    def __init__(self):
        self.uploads = []
        self.downloads = []
        self.commands = []
        self.upload_errors = {}
        self.upload_delay = 0
        self.exec_delay = 0
        self.missing_after_upload = set()
        self.api_errors = set()
        self.listing_errors = set()
        self.exec_results = {}
        self.fallback_results = {}
        self.download_error = None
        self._lock = threading.Lock()

    # sftp
    def sftp_get(self, host, user, password, remote_path, local_path, port=22):
        if self.download_error:
            raise self.download_error
        with open(local_path, 'wb') as f:
            f.write(b'ISO' * 100)
        self.downloads.append((host, remote_path, local_path))

    def sftp_put(self, host, user, password, local_path, remote_path, port=22, abort=None):
        if host in self.upload_errors:
            raise self.upload_errors[host]
        size = os.path.getsize(local_path)
        # slow link that never looks at abort, the upload lands regardless
        time.sleep(self.upload_delay)
        with self._lock:
            self.uploads.append((host, remote_path))
        return size

    # ssh
    def ssh_exec(self, host, user, cmd, password=None, key_path=None, port=22, timeout=30):
        time.sleep(self.exec_delay)
        with self._lock:
            self.commands.append((host, cmd))
        return self.exec_results.get(host, (0, f'{KEY_VERIFIED_MARKER}\n', ''))

    def ssh_exec_with_fallback(self, host, user, password, cmd, key_path=None, port=22, timeout=30):
        with self._lock:
            self.commands.append((host, cmd))
        return self.fallback_results.get(host, (0, 'Connection test successful\n', '', 'ssh_key'))

    # proxmox api
    def proxmox_client(self, remote):
        class _Client:
            def __init__(self, cluster, timeout=None):
                self.host = cluster['host']

            def pick_node(self, preferred=None):
                if self.host in remote.api_errors:
                    raise ProxmoxAPIError(f'Cannot connect to {self.host}')
                return preferred or 'pve'

            def storage_iso_dir(self, storage):
                if self.host in remote.api_errors:
                    raise ProxmoxAPIError(f'Cannot connect to {self.host}')
                path = remote.STORAGES.get(storage)
                if path is None:
                    raise ProxmoxAPIError(f"Storage '{storage}' on {self.host} has no directory")
                return f'{path}/template/iso'

            def iso_exists(self, node, storage, filename):
                if self.host in remote.listing_errors:
                    raise ProxmoxAPIError(f'GET /nodes/{node}/storage/{storage}/content -> HTTP 500')
                if self.host in remote.missing_after_upload:
                    return False
                return (self.host, f'{self.storage_iso_dir(storage)}/{filename}') in remote.uploads
        return _Client


@pytest.fixture
def remote(monkeypatch, tmp_path):
    fake = FakeRemote()
    monkeypatch.setattr(ops_module, 'sftp_get', fake.sftp_get)
    monkeypatch.setattr(ops_module, 'sftp_put', fake.sftp_put)
    monkeypatch.setattr(ops_module, 'ssh_exec', fake.ssh_exec)
    monkeypatch.setattr(ops_module, 'ssh_exec_with_fallback', fake.ssh_exec_with_fallback)
    monkeypatch.setattr(ops_module, 'ProxmoxClient', fake.proxmox_client(fake))
    staging = tmp_path / 'staging'
    staging.mkdir()
    monkeypatch.setattr(ops_module, 'ISO_STAGING_DIR', str(staging))
    return fake


@pytest.fixture
def coordinator(db, key_manager):
    return BulkCoordinator(JobStore(), default_operations(db, key_manager), db=db, target_timeout=5)


def _run(coordinator, kind, **kwargs):
    job = coordinator.submit(kind, **kwargs)
    assert coordinator.wait(job['id'], timeout=20)
    return coordinator.store.get(job['id'])


@pytest.fixture
def four_clusters(db):
    return [add_cluster(db, name) for name in ('alpha', 'bravo', 'charlie', 'delta')]


@pytest.fixture
def iso_id(db, four_clusters):
    return db.add_iso({
        'name': 'Debian 12',
        'filename': 'debian-12.iso',
        'size_bytes': 300,
        'cluster_id': four_clusters[0],
        'storage': 'local',
        'node': 'pve1',
    })


# ----------------------------------------------------------------------------
# iso_sync
# ----------------------------------------------------------------------------

def test_iso_sync_partial_failure(coordinator, remote, db, four_clusters, iso_id):
    a, b, c, d = four_clusters
    remote.upload_errors['bravo.example.net'] = IOError('Permission denied')

    job = _run(coordinator, 'iso_sync', target_ids=[b, c, d], params={'isoId': iso_id}, user='alice')

    assert job['status'] == JobStatus.COMPLETED
    assert job['sourceId'] == a
    assert [r['status'] for r in job['results']] == ['failed', 'success', 'success']
    assert 'Permission denied' in job['results'][0]['message']

    for result, cid in zip(job['results'][1:], (c, d)):
        iso = db.get_iso(result['producedArtifactId'])
        assert iso['cluster_id'] == cid
        assert iso['filename'] == 'debian-12.iso'
        assert iso['description'] == 'Synced from cluster alpha'
        assert iso['uploaded_by'] == 'alice'
        assert iso['node'] == 'pve1'

    assert len(remote.downloads) == 1
    assert sorted(h for h, _ in remote.uploads) == ['charlie.example.net', 'delta.example.net']
    assert remote.uploads[0][1] == '/var/lib/vz/template/iso/debian-12.iso'
    # staging copy is gone once the job is done
    assert not os.path.exists(remote.downloads[0][2])


def test_iso_sync_source_never_a_target(coordinator, remote, four_clusters, iso_id):
    a, b = four_clusters[:2]
    job = _run(coordinator, 'iso_sync', target_ids=[a, b], params={'isoId': iso_id})
    assert job['targetIds'] == [b]


def test_iso_sync_download_failure_is_fatal(coordinator, remote, four_clusters, iso_id):
    remote.download_error = IOError('No such file')
    job = _run(coordinator, 'iso_sync', target_ids=four_clusters[1:], params={'isoId': iso_id})

    assert job['status'] == JobStatus.FAILED
    assert 'Failed to download ISO from cluster alpha' in job['error']
    assert [r['status'] for r in job['results']] == ['pending'] * 3
    assert remote.uploads == []


def test_iso_sync_upload_without_verification_is_a_failure(coordinator, remote, db, four_clusters, iso_id):
    b, c, d = four_clusters[1:]
    remote.missing_after_upload.add('charlie.example.net')
    remote.listing_errors.add('delta.example.net')

    job = _run(coordinator, 'iso_sync', target_ids=[b, c, d], params={'isoId': iso_id})

    assert [r['status'] for r in job['results']] == ['success', 'failed', 'failed']
    assert 'not listed' in job['results'][1]['message']
    assert 'could not be verified' in job['results'][2]['message']


def test_iso_sync_unreachable_api_skips_upload(coordinator, remote, four_clusters, iso_id):
    remote.api_errors.add('bravo.example.net')
    job = _run(coordinator, 'iso_sync', target_ids=four_clusters[1:2], params={'isoId': iso_id})

    assert job['results'][0]['status'] == 'failed'
    assert 'Cannot connect to bravo.example.net' in job['results'][0]['message']
    assert remote.uploads == []


def test_iso_sync_uploads_into_the_target_storage_directory(coordinator, remote, db, four_clusters, iso_id):
    b = four_clusters[1]
    job = _run(coordinator, 'iso_sync', target_ids=[b], params={'isoId': iso_id, 'targetStorage': 'nfs-iso'})

    assert job['results'][0]['status'] == 'success'
    assert remote.uploads == [('bravo.example.net', '/mnt/pve/nfs-iso/template/iso/debian-12.iso')]
    # source side still read from the storage the ISO is registered on
    assert remote.downloads[0][1] == '/var/lib/vz/template/iso/debian-12.iso'
    assert db.get_iso(job['results'][0]['producedArtifactId'])['storage'] == 'nfs-iso'


def test_iso_sync_to_block_storage_fails_without_upload(coordinator, remote, db, four_clusters, iso_id):
    job = _run(coordinator, 'iso_sync', target_ids=four_clusters[1:3],
               params={'isoId': iso_id, 'targetStorage': 'local-lvm'})

    assert job['status'] == JobStatus.COMPLETED
    assert [r['status'] for r in job['results']] == ['failed', 'failed']
    assert "storage 'local-lvm'" in job['results'][0]['message']
    assert remote.uploads == []


def test_iso_sync_source_storage_unknown_is_fatal(coordinator, remote, db, four_clusters, iso_id):
    remote.api_errors.add('alpha.example.net')
    job = _run(coordinator, 'iso_sync', target_ids=four_clusters[1:], params={'isoId': iso_id})

    assert job['status'] == JobStatus.FAILED
    assert "Cannot locate storage 'local' on cluster alpha" in job['error']
    assert remote.downloads == []


def _isos_on(db, cluster_id):
    return db.conn.execute('SELECT id FROM isos WHERE cluster_id = ?', (cluster_id,)).fetchall()


def _wait_for_target_threads(cid, timeout=5):
    deadline = time.time() + timeout
    while any(t.name == f'bulk-target-{cid}' for t in threading.enumerate()):
        assert time.time() < deadline, f'executor thread for {cid} still running'
        time.sleep(0.01)


def test_iso_sync_timed_out_target_is_not_registered(db, key_manager, remote, four_clusters, iso_id):
    b = four_clusters[1]
    operations = default_operations(db, key_manager)
    operations['iso_sync'].target_timeout = 0.3
    coordinator = BulkCoordinator(JobStore(), operations, db=db, target_timeout=5)
    remote.upload_delay = 1.0

    job = _run(coordinator, 'iso_sync', target_ids=[b], params={'isoId': iso_id})
    assert job['results'][0]['status'] == 'failed'
    assert job['results'][0]['message'] == 'Operation timed out after 0.3s'

    _wait_for_target_threads(b)
    # the upload finished late, the target must still have no isos row
    assert remote.uploads == [('bravo.example.net', '/var/lib/vz/template/iso/debian-12.iso')]
    assert _isos_on(db, b) == []
    assert coordinator.store.get(job['id']) == job


def test_iso_sync_has_its_own_timeout():
    assert ops_module.IsoSyncOperation.target_timeout == ISO_SYNC_TARGET_TIMEOUT
    assert ISO_SYNC_TARGET_TIMEOUT > BULK_TARGET_TIMEOUT
    assert ops_module.SSHKeyPushOperation.target_timeout is None


def test_iso_sync_db_insert_failure_reports_partial_state(coordinator, remote, db, four_clusters, iso_id, monkeypatch):
    def broken_add_iso(data):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(db, 'add_iso', broken_add_iso)
    job = _run(coordinator, 'iso_sync', target_ids=[four_clusters[1]], params={'isoId': iso_id})

    result = job['results'][0]
    assert result['status'] == 'failed'
    assert 'uploaded' in result['message'] and 'registering it failed' in result['message']


@pytest.mark.parametrize('params, match', [
    ({}, 'isoId'),
    ({'isoId': 'abc'}, 'Invalid isoId'),
    ({'isoId': 999}, 'Source ISO not found'),
])
def test_iso_sync_validation(coordinator, remote, four_clusters, iso_id, params, match):
    with pytest.raises(ValidationError, match=match):
        coordinator.submit('iso_sync', target_ids=four_clusters[1:], params=params)
    assert len(coordinator.store) == 0


def test_iso_sync_mismatched_source(coordinator, remote, four_clusters, iso_id):
    with pytest.raises(ValidationError):
        coordinator.submit('iso_sync', target_ids=four_clusters[2:], source_id=four_clusters[1],
                           params={'isoId': iso_id})


# ----------------------------------------------------------------------------
# ssh_key_bulk_push
# ----------------------------------------------------------------------------

def test_bulk_push_requires_a_key(coordinator, remote, four_clusters):
    with pytest.raises(ValidationError, match='No active SSH key'):
        coordinator.submit('ssh_key_bulk_push', target_ids=four_clusters)


def test_bulk_push_records_configured_clusters(coordinator, remote, db, key_manager, four_clusters):
    key_manager.generate()
    a, b, c, d = four_clusters
    remote.exec_results['bravo.example.net'] = (1, '', 'Authentication failed.')
    remote.exec_results['charlie.example.net'] = (0, f'{KEY_MISSING_MARKER}\n', '')

    job = _run(coordinator, 'ssh_key_bulk_push', target_ids=four_clusters)

    assert job['status'] == JobStatus.COMPLETED
    assert [r['status'] for r in job['results']] == ['success', 'failed', 'failed', 'success']
    assert job['results'][1]['message'] == 'Authentication failed.'
    assert 'could not be verified' in job['results'][2]['message']

    public_key = key_manager.read_public_key()
    assert all(public_key.split()[1] in cmd for _, cmd in remote.commands)

    record = db.get_ssh_key(key_manager.fingerprint())
    statuses = {s['cluster_id']: s for s in db.get_key_cluster_statuses(record['id'])}
    assert set(statuses) == {a, d}
    assert statuses[a]['is_configured'] == 1
    assert statuses[a]['push_count'] == 1


def test_bulk_push_timed_out_target_is_not_recorded(db, key_manager, remote, four_clusters):
    key_manager.generate()
    a = four_clusters[0]
    operations = default_operations(db, key_manager)
    coordinator = BulkCoordinator(JobStore(), operations, db=db, target_timeout=0.2)
    remote.exec_delay = 0.6

    job = _run(coordinator, 'ssh_key_bulk_push', target_ids=[a])
    assert job['results'][0]['status'] == 'failed'
    assert 'timed out' in job['results'][0]['message']

    _wait_for_target_threads(a)
    assert len(remote.commands) == 1
    record = db.get_ssh_key(key_manager.fingerprint())
    assert db.get_key_cluster_statuses(record['id']) == []


# ----------------------------------------------------------------------------
# ssh_key_rotation
# ----------------------------------------------------------------------------

def test_rotation_generates_before_pushing(coordinator, remote, db, key_manager, four_clusters, monkeypatch):
    old = key_manager.generate()
    key_manager.ensure_record(db)
    seen = []

    def checking_exec(host, user, cmd, **kwargs):
        # new key already on disk and active in the db when the first push happens
        seen.append((key_manager.fingerprint(), db.get_active_ssh_key()['fingerprint']))
        return remote.ssh_exec(host, user, cmd, **kwargs)

    monkeypatch.setattr(ops_module, 'ssh_exec', checking_exec)
    remote.exec_results['charlie.example.net'] = (255, '', 'Connection refused')

    job = _run(coordinator, 'ssh_key_rotation', user='admin')

    new_fp = key_manager.fingerprint()
    assert new_fp != old['fingerprint']
    assert seen == [(new_fp, new_fp)] * 4
    assert job['targetIds'] == four_clusters
    assert job['status'] == JobStatus.COMPLETED
    assert [r['status'] for r in job['results']] == ['success', 'success', 'failed', 'success']
    # pushed one after the other in cluster order
    assert [h for h, _ in remote.commands] == [
        'alpha.example.net', 'bravo.example.net', 'charlie.example.net', 'delta.example.net']

    assert db.get_ssh_key(old['fingerprint'])['status'] == 'rotated'
    assert db.get_active_ssh_key()['rotation_count'] == 1
    assert key_manager.has_backup()
    audit = db.get_audit_log(action='ssh_key.rotated')
    assert audit and '3/4' in audit[0]['details']


def test_rotation_precondition_failure(coordinator, remote, db, key_manager, four_clusters, monkeypatch):
    key_manager.generate()

    def broken_rotate():
        raise SSHKeyError('Failed to generate new SSH key pair: disk full')

    monkeypatch.setattr(key_manager, 'rotate', broken_rotate)
    job = _run(coordinator, 'ssh_key_rotation')

    assert job['status'] == JobStatus.FAILED
    assert 'disk full' in job['error']
    assert [r['status'] for r in job['results']] == ['pending'] * 4
    assert job['progress'] == 0
    assert remote.commands == []


def test_rotation_db_failure_restores_backup(coordinator, remote, db, key_manager, four_clusters, monkeypatch):
    old = key_manager.generate()

    def broken_rotate_db(*args, **kwargs):
        raise RuntimeError('disk I/O error')

    monkeypatch.setattr(db, 'rotate_ssh_key', broken_rotate_db)
    job = _run(coordinator, 'ssh_key_rotation')

    assert job['status'] == JobStatus.FAILED
    assert 'Failed to persist new SSH key' in job['error']
    assert key_manager.fingerprint() == old['fingerprint']
    assert remote.commands == []


# ----------------------------------------------------------------------------
# connection_test
# ----------------------------------------------------------------------------

def test_connection_test_tracks_auth_method(coordinator, remote, db, key_manager, four_clusters):
    key_manager.generate()
    a, b, c, d = four_clusters
    remote.fallback_results['bravo.example.net'] = (0, 'Connection test successful\n', '', 'password')
    remote.fallback_results['charlie.example.net'] = (1, '', 'No route to host', 'password')

    job = _run(coordinator, 'connection_test', target_ids=[a, b, c])

    assert [r['status'] for r in job['results']] == ['success', 'success', 'failed']
    assert job['results'][0]['message'] == 'Connection successful (ssh_key)'
    assert job['results'][1]['message'] == 'Connection successful (password)'
    assert job['results'][2]['message'] == 'No route to host'

    record = db.get_ssh_key(key_manager.fingerprint())
    statuses = {s['cluster_id']: s for s in db.get_key_cluster_statuses(record['id'])}
    assert statuses[a]['auth_method_last_used'] == 'ssh_key'
    assert statuses[a]['is_configured'] == 1
    assert statuses[b]['auth_method_last_used'] == 'password'
    assert statuses[b]['is_configured'] == 0
    assert statuses[c]['last_test_success'] == 0
    assert db.get_ssh_key(record['fingerprint'])['last_used_at'] is not None


def test_connection_test_without_key_uses_password(coordinator, remote, db, four_clusters):
    remote.fallback_results['alpha.example.net'] = (0, 'ok', '', 'password')
    job = _run(coordinator, 'connection_test', target_ids=four_clusters[:1])
    assert job['results'][0]['status'] == 'success'
