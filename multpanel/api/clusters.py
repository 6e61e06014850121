# -*- coding: utf-8 -*-
"""cluster registry - just enough to manage the bulk targets, the panel owns the rest"""

import logging

from flask import Blueprint, jsonify

from multpanel.core.db import get_db
from multpanel.core.errors import ValidationError
from multpanel.utils.auth import require_auth
from multpanel.utils.audit import log_audit
from multpanel.api.helpers import error_response, current_user, get_json_body

bp = Blueprint('clusters', __name__)

CLUSTER_STATUSES = ('active', 'inactive', 'maintenance')


def _validate_cluster(data):
    missing = [f for f in ('name', 'host', 'user', 'pass') if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
    for field in ('port', 'api_port'):
        value = data.get(field)
        if value in (None, ''):
            continue
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{field} must be a number')
        if not 1 <= port <= 65535:
            raise ValidationError(f'{field} out of range')
    status = data.get('status', 'active')
    if status not in CLUSTER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(CLUSTER_STATUSES)}")


@bp.route('/api/clusters', methods=['GET'])
@require_auth()
def list_clusters():
    try:
        return jsonify(get_db().get_clusters())
    except Exception as e:
        return error_response(e, 'Failed to list clusters')


@bp.route('/api/clusters', methods=['POST'])
@require_auth()
def add_cluster():
    try:
        data = get_json_body()
        _validate_cluster(data)
    except ValidationError as e:
        return error_response(e)

    db = get_db()
    try:
        cluster_id = db.add_cluster(data)
    except Exception as e:
        return error_response(e, 'Failed to add cluster')

    logging.info(f"Cluster {data['name']} ({data['host']}) added as #{cluster_id}")
    log_audit(current_user(), 'cluster.added', f"Added cluster {data['name']} ({data['host']})")
    return jsonify(db.get_cluster(cluster_id)), 201


@bp.route('/api/clusters/<int:cluster_id>', methods=['DELETE'])
@require_auth()
def delete_cluster(cluster_id):
    db = get_db()
    cluster = db.get_cluster(cluster_id)
    if not cluster:
        return jsonify({'error': 'Cluster not found'}), 404
    try:
        db.delete_cluster(cluster_id)
    except Exception as e:
        return error_response(e, 'Failed to delete cluster')

    log_audit(current_user(), 'cluster.deleted', f"Deleted cluster {cluster['name']}")
    return jsonify({'message': 'Cluster deleted'})
