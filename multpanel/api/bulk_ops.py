# -*- coding: utf-8 -*-
"""bulk operations - submit a job, poll it by id. The old per-feature routes are kept as aliases."""

import logging

from flask import Blueprint, jsonify, request

from multpanel.constants import BULK_POLL_INTERVAL_MS
from multpanel.core.db import get_db
from multpanel.core.errors import ValidationError, UnknownOperationError, JobNotFoundError
from multpanel.core.targets import normalize_ids
from multpanel.utils.auth import require_auth
from multpanel.api.helpers import error_response, current_user, get_json_body, get_coordinator

bp = Blueprint('bulk_ops', __name__)


def _submit(kind, target_ids, source_id=None, params=None, message=None):
    try:
        job = get_coordinator().submit(kind, target_ids=target_ids, source_id=source_id,
                                       params=params, user=current_user())
    except (ValidationError, UnknownOperationError) as e:
        return error_response(e)
    except Exception as e:
        return error_response(e, 'Failed to start bulk operation')

    resp = {
        'id': job['id'],
        'status': job['status'],
        'pollIntervalMs': BULK_POLL_INTERVAL_MS,
    }
    if message:
        resp['message'] = message
    return jsonify(resp), 202


def _required_ids(data, field):
    ids = normalize_ids(data.get(field), field=field)
    if not ids:
        raise ValidationError(f'{field} array is required')
    return ids


@bp.route('/api/bulk-ops', methods=['GET'])
@require_auth()
def list_bulk_jobs():
    """jobs still held in memory, newest first"""
    return jsonify(get_coordinator().store.list())


@bp.route('/api/bulk-ops/history', methods=['GET'])
@require_auth()
def get_bulk_history():
    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        return jsonify({'error': 'limit must be a number'}), 400
    limit = max(1, min(limit, 500))
    try:
        return jsonify(get_db().get_bulk_operations(limit=limit))
    except Exception as e:
        return error_response(e, 'Failed to fetch bulk operation history')


@bp.route('/api/bulk-ops/<kind>', methods=['POST'])
@require_auth()
def submit_bulk_job(kind):
    kind = kind.replace('-', '_')
    try:
        data = get_json_body()
        target_ids = normalize_ids(data.get('targetIds'))
        params = data.get('params') or {}
        if not isinstance(params, dict):
            raise ValidationError('params must be an object')
    except ValidationError as e:
        return error_response(e)
    return _submit(kind, target_ids, source_id=data.get('sourceId'), params=params)


@bp.route('/api/bulk-ops/<job_id>', methods=['GET'])
@require_auth()
def get_bulk_job(job_id):
    """poll endpoint - pure read, same answer until the coordinator changes something"""
    try:
        return jsonify(get_coordinator().store.get(job_id))
    except JobNotFoundError as e:
        return error_response(e)


# ----------------------------------------------------------------------------
# aliases for the existing frontend
# ----------------------------------------------------------------------------

@bp.route('/api/isos/sync', methods=['POST'])
@require_auth()
def start_iso_sync():
    try:
        data = get_json_body()
        target_ids = normalize_ids(data.get('targetClusterIds'), field='targetClusterIds')
        if not target_ids:
            raise ValidationError('targetClusterIds must be a non-empty array')
    except ValidationError as e:
        return error_response(e)

    params = {
        'isoId': data.get('isoId'),
        'targetStorage': data.get('targetStorage'),
        'targetNode': data.get('targetNode'),
    }
    logging.info(f"[ISOSync] Sync of ISO {params['isoId']} to {len(target_ids)} cluster(s) requested")
    return _submit('iso_sync', target_ids, params=params, message='ISO sync started')


@bp.route('/api/clusters/rotate-ssh-keys', methods=['POST'])
@require_auth()
def rotate_ssh_keys():
    """new key pair + push to all active clusters (or the given cluster_ids)"""
    try:
        target_ids = normalize_ids(get_json_body().get('cluster_ids'), field='cluster_ids')
    except ValidationError as e:
        return error_response(e)
    return _submit('ssh_key_rotation', target_ids, message='SSH key rotation started')


@bp.route('/api/clusters/bulk/push-ssh-keys', methods=['POST'])
@require_auth()
def bulk_push_ssh_keys():
    try:
        target_ids = _required_ids(get_json_body(), 'cluster_ids')
    except ValidationError as e:
        return error_response(e)
    return _submit('ssh_key_bulk_push', target_ids, message='SSH key push started')


@bp.route('/api/clusters/bulk/test-connection', methods=['POST'])
@require_auth()
def bulk_test_connection():
    try:
        target_ids = _required_ids(get_json_body(), 'cluster_ids')
    except ValidationError as e:
        return error_response(e)
    return _submit('connection_test', target_ids, message='Connection test started')
