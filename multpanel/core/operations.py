# -*- coding: utf-8 -*-
"""
MultPanel Bulk Operations - Layer 4
What each bulk job kind actually does on one target cluster.

Every operation has three stages:
  prepare(job)                      once, before any target - raise PreconditionError to fail the job
  execute(context, target, attempt) once per cluster - returns SuccessResult / FailedResult, never raises on purpose
  finalize(context, job)            once, after all targets were attempted

execute has to call attempt.commit() right before writing anything to the
local DB and give up when it returns False: the coordinator already reported
that target as timed out.
"""

import os
import logging

from multpanel.constants import ISO_STAGING_DIR, ISO_SYNC_TARGET_TIMEOUT
from multpanel.core.db import get_db
from multpanel.core.errors import ValidationError, PreconditionError, SSHKeyError
from multpanel.core.jobs import SuccessResult, FailedResult
from multpanel.core.keys import SSHKeyManager
from multpanel.core.proxmox import ProxmoxClient, ProxmoxAPIError
from multpanel.utils.audit import log_audit
from multpanel.utils.ssh import (
    ssh_exec, ssh_exec_with_fallback, sftp_get, sftp_put, ssh_username, TransferAborted,
    build_authorized_keys_command, KEY_VERIFIED_MARKER,
)


def _short(err, limit=200):
    msg = str(err).strip() or err.__class__.__name__
    return msg if len(msg) <= limit else msg[:limit] + '...'


class BulkOperation:
    kind = None
    concurrent = False
    targets_default_all = False  # no targetIds -> every active cluster
    target_timeout = None  # seconds per target, None -> coordinator default

    def __init__(self, db=None, key_manager=None):
        self._db = db
        self.keys = key_manager or SSHKeyManager()

    @property
    def db(self):
        return self._db or get_db()

    def validate(self, source_id, params):
        """submission time checks, returns the effective source cluster id"""
        return source_id

    def prepare(self, job):
        return {}

    def execute(self, context, cluster, attempt):
        raise NotImplementedError

    def finalize(self, context, job):
        pass


class IsoSyncOperation(BulkOperation):
    """copy one ISO from its cluster to other clusters

    The ISO is downloaded once into a staging file, then uploaded to each
    target over SFTP into the directory of the target storage, checked in the
    storage listing and registered as a new isos row (that row id is the
    produced artifact).
    """
    kind = 'iso_sync'
    concurrent = True
    target_timeout = ISO_SYNC_TARGET_TIMEOUT

    def validate(self, source_id, params):
        iso_id = params.get('isoId')
        if iso_id in (None, ''):
            raise ValidationError('Missing required field: isoId')
        try:
            iso_id = int(iso_id)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid isoId: {iso_id!r}')
        params['isoId'] = iso_id

        iso = self.db.get_iso(iso_id)
        if not iso:
            raise ValidationError('Source ISO not found')
        if not self.db.get_cluster(iso['cluster_id']):
            raise ValidationError('Source cluster not found')
        if source_id is not None and source_id != iso['cluster_id']:
            raise ValidationError('sourceId does not match the cluster of the ISO')
        return iso['cluster_id']

    def prepare(self, job):
        params = job['params']
        iso = self.db.get_iso(params['isoId'])
        source = self.db.get_cluster(job['sourceId'], include_secret=True)
        if not iso or not source:
            raise PreconditionError('Source ISO or source cluster disappeared')

        filename = os.path.basename(iso['filename'])
        source_storage = iso['storage'] or 'local'
        try:
            source_dir = ProxmoxClient(source).storage_iso_dir(source_storage)
        except ProxmoxAPIError as e:
            raise PreconditionError(f"Cannot locate storage '{source_storage}' on cluster {source['name']}: {_short(e)}")

        staging_path = os.path.join(ISO_STAGING_DIR, f"iso-sync-{job['id']}-{filename}")
        logging.info(f"[ISOSync] Downloading {filename} from cluster {source['name']}")
        try:
            sftp_get(source['host'], ssh_username(source), source['password'],
                     f"{source_dir}/{filename}", staging_path, port=source['port'])
        except Exception as e:
            _remove_quietly(staging_path)
            raise PreconditionError(f"Failed to download ISO from cluster {source['name']}: {_short(e)}")

        return {
            'iso': iso,
            'filename': filename,
            'source_name': source['name'],
            'staging_path': staging_path,
            'storage': params.get('targetStorage') or source_storage,
            'node': params.get('targetNode') or iso['node'] or None,
            'user': job['initiatedBy'],
        }

    def execute(self, context, cluster, attempt):
        cid = cluster['id']
        filename = context['filename']
        storage = context['storage']
        try:
            client = ProxmoxClient(cluster)
            node = client.pick_node(context['node'])
            remote_path = f"{client.storage_iso_dir(storage)}/{filename}"
        except ProxmoxAPIError as e:
            return FailedResult(cid, f"Cannot upload to storage '{storage}' on {cluster['host']}: {_short(e)}")

        try:
            sftp_put(cluster['host'], ssh_username(cluster), cluster['password'],
                     context['staging_path'], remote_path, port=cluster['port'],
                     abort=lambda: attempt.cancelled)
        except TransferAborted as e:
            return FailedResult(cid, _short(e))
        except Exception as e:
            logging.error(f"[ISOSync] Upload to cluster {cluster['name']} failed: {e}")
            return FailedResult(cid, f"Failed to upload ISO: {_short(e)}")

        # the file is on the target from here on, anything failing below is a partial sync
        try:
            if not client.iso_exists(node, storage, filename):
                return FailedResult(cid, f"ISO uploaded to {cluster['host']} but not listed in storage '{storage}' on node {node}")
        except ProxmoxAPIError as e:
            return FailedResult(cid, f"ISO uploaded to {cluster['host']} but could not be verified: {_short(e)}")

        if not attempt.commit():
            logging.warning(f"[ISOSync] {filename} reached {cluster['name']} after the timeout, left at {remote_path} unregistered")
            return FailedResult(cid, f"ISO upload to {cluster['host']} finished after the timeout, not registered")

        iso = context['iso']
        try:
            new_id = self.db.add_iso({
                'name': iso['name'],
                'filename': filename,
                'size_bytes': iso['size_bytes'],
                'cluster_id': cid,
                'storage': storage,
                'node': node,
                'company_id': iso['company_id'],
                'is_default': iso['is_default'],
                'description': f"Synced from cluster {context['source_name']}",
                'uploaded_by': context['user'],
            })
        except Exception as e:
            logging.error(f"[ISOSync] ISO uploaded to {cluster['name']} but DB insert failed: {e}")
            return FailedResult(cid, f"ISO uploaded to {cluster['host']} but registering it failed: {_short(e)}")

        logging.info(f"[ISOSync] ISO synced to cluster {cluster['name']}, new ISO ID: {new_id}")
        return SuccessResult(cid, 'ISO synced successfully', artifact_id=new_id)

    def finalize(self, context, job):
        _remove_quietly(context.get('staging_path'))


def _remove_quietly(path):
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning(f"Could not remove {path}: {e}")


class SSHKeyPushOperation(BulkOperation):
    """append the service public key to authorized_keys on each cluster (password auth)"""
    kind = 'ssh_key_bulk_push'
    concurrent = True

    def validate(self, source_id, params):
        if not self.keys.exists():
            raise ValidationError('No active SSH key found. Generate SSH keys first.')
        return source_id

    def prepare(self, job):
        try:
            public_key = self.keys.read_public_key()
            record = self.keys.ensure_record(self.db, created_by=job['initiatedBy'])
        except SSHKeyError as e:
            raise PreconditionError(str(e))
        return {'public_key': public_key, 'key_record': record}

    def execute(self, context, cluster, attempt):
        cid = cluster['id']
        cmd = build_authorized_keys_command(context['public_key'])
        rc, out, err = ssh_exec(cluster['host'], ssh_username(cluster), cmd,
                                password=cluster['password'], port=cluster['port'])
        if rc != 0:
            return FailedResult(cid, _short(err) if err.strip() else f'Remote command failed with exit code {rc}')
        if KEY_VERIFIED_MARKER not in out:
            return FailedResult(cid, 'SSH key was added but could not be verified')

        if not attempt.commit():
            logging.warning(f"[SSHKeys] Key reached {cluster['name']} after the timeout, push not recorded")
            return FailedResult(cid, f"SSH key push to {cluster['host']} finished after the timeout, not recorded")

        try:
            self.db.record_key_push(context['key_record']['id'], cid)
        except Exception as e:
            logging.error(f"[SSHKeys] Push to {cluster['name']} worked but status update failed: {e}")
            return FailedResult(cid, f"SSH key pushed to {cluster['host']} but recording the push failed: {_short(e)}")

        logging.info(f"[SSHKeys] SSH key pushed to cluster {cluster['name']} ({cid})")
        return SuccessResult(cid, 'SSH key pushed and verified')

    def finalize(self, context, job):
        s = job['summary']
        log_audit(job['initiatedBy'], 'ssh_key.bulk_push',
                  f"Pushed SSH key {context['key_record']['fingerprint']} to {s['succeeded']}/{s['total']} clusters",
                  db=self.db)


class SSHKeyRotationOperation(SSHKeyPushOperation):
    """new key pair, then push it everywhere

    Ordering matters: the old pair is backed up and the new one written to disk
    and the DB before the first push. If no cluster accepts the new key the
    backup is the way back (POST /api/ssh-keys/restore-backup).
    """
    kind = 'ssh_key_rotation'
    concurrent = False
    targets_default_all = True

    def validate(self, source_id, params):
        return source_id

    def prepare(self, job):
        try:
            info = self.keys.rotate()
        except SSHKeyError as e:
            raise PreconditionError(str(e))

        try:
            record = self.db.rotate_ssh_key(info['previousFingerprint'], info['publicKey'],
                                            info['fingerprint'], self.keys.bits, created_by=job['initiatedBy'])
        except Exception as e:
            if info['backupKeyPath']:
                try:
                    self.keys.restore_backup()
                except SSHKeyError as restore_err:
                    logging.error(f"[SSHKeys] Could not restore backup: {restore_err}")
            raise PreconditionError(f"Failed to persist new SSH key: {_short(e)}")

        logging.info(f"[SSHKeys] New SSH key generated: {info['fingerprint']}")
        return {
            'public_key': info['publicKey'],
            'key_record': record,
            'fingerprint': info['fingerprint'],
            'previous_fingerprint': info['previousFingerprint'],
            'backup_path': info['backupKeyPath'],
        }

    def finalize(self, context, job):
        s = job['summary']
        if s['total'] and not s['succeeded'] and context.get('backup_path'):
            logging.warning(f"[SSHKeys] Rotation reached no cluster - previous key is still at {context['backup_path']}")
        log_audit(job['initiatedBy'], 'ssh_key.rotated',
                  f"SSH keys rotated ({context['fingerprint']}). Successfully pushed to {s['succeeded']}/{s['total']} clusters",
                  db=self.db)


class ConnectionTestOperation(BulkOperation):
    """ssh echo on each cluster, key auth first then password; records which one worked"""
    kind = 'connection_test'
    concurrent = True

    def prepare(self, job):
        record = None
        if self.keys.exists():
            try:
                record = self.keys.ensure_record(self.db)
            except SSHKeyError as e:
                logging.warning(f"[SSHKeys] Key on disk unusable, testing with password only: {e}")
        return {'key_record': record}

    def execute(self, context, cluster, attempt):
        cid = cluster['id']
        key_path = self.keys.private_key_path if context['key_record'] else None
        rc, out, err, auth_method = ssh_exec_with_fallback(
            cluster['host'], ssh_username(cluster), cluster['password'],
            'echo "Connection test successful"', key_path=key_path, port=cluster['port'])
        success = rc == 0

        if not attempt.commit():
            return FailedResult(cid, 'Connection test finished after the timeout, result not recorded')

        if context['key_record']:
            try:
                self.db.record_key_auth(context['key_record']['id'], cid, auth_method, success)
            except Exception as e:
                logging.error(f"[BulkOps] Could not record auth result for {cluster['name']}: {e}")
                if success:
                    return FailedResult(cid, f"Connection worked ({auth_method}) but recording the result failed: {_short(e)}")

        if not success:
            return FailedResult(cid, _short(err) if err.strip() else 'Connection failed')
        return SuccessResult(cid, f'Connection successful ({auth_method})')


def default_operations(db=None, key_manager=None) -> dict:
    keys = key_manager or SSHKeyManager()
    operations = [
        IsoSyncOperation(db, keys),
        SSHKeyPushOperation(db, keys),
        SSHKeyRotationOperation(db, keys),
        ConnectionTestOperation(db, keys),
    ]
    return {op.kind: op for op in operations}
