# -*- coding: utf-8 -*-
"""service SSH key lifecycle + health - MK"""

import logging

from flask import Blueprint, jsonify

from multpanel import globals as g
from multpanel.core.db import get_db
from multpanel.core.errors import ValidationError, SSHKeyError
from multpanel.core.keys import SSHKeyManager, compute_key_health, expiration_from_days
from multpanel.utils.auth import require_auth
from multpanel.utils.audit import log_audit
from multpanel.api.helpers import error_response, current_user, get_json_body

bp = Blueprint('ssh_keys', __name__)


def _keys():
    if g.key_manager is None:
        g.key_manager = SSHKeyManager()
    return g.key_manager


@bp.route('/api/ssh-keys/public-key', methods=['GET'])
@require_auth()
def get_public_key():
    keys = _keys()
    if not keys.exists():
        return jsonify({'error': 'SSH keys not found. Generate them first.'}), 404
    try:
        public_key = keys.read_public_key()
        return jsonify({
            'publicKey': public_key,
            'fingerprint': keys.fingerprint(),
            'location': keys.public_key_path,
        })
    except SSHKeyError as e:
        return error_response(e)


@bp.route('/api/ssh-keys/generate', methods=['POST'])
@require_auth()
def generate_keys():
    """creates the pair once, afterwards just returns the existing one (use rotation to replace it)"""
    keys = _keys()
    try:
        info = keys.generate(overwrite=False)
        keys.ensure_record(get_db(), created_by=current_user())
    except SSHKeyError as e:
        return error_response(e)
    except Exception as e:
        return error_response(e, 'Failed to generate SSH keys')

    if info['existing']:
        return jsonify({
            'message': 'SSH keys already exist',
            'publicKey': info['publicKey'],
            'fingerprint': info['fingerprint'],
            'existing': True,
        })

    log_audit(current_user(), 'ssh_key.generated', f"Generated SSH key {info['fingerprint']}")
    return jsonify({
        'message': 'SSH keys generated',
        'publicKey': info['publicKey'],
        'fingerprint': info['fingerprint'],
        'existing': False,
    }), 201


@bp.route('/api/ssh-keys/restore-backup', methods=['POST'])
@require_auth()
def restore_key_backup():
    """put the pre-rotation pair back, e.g. after a rotation that reached no cluster"""
    db = get_db()
    try:
        fingerprint = _keys().restore_backup()
        if not db.activate_ssh_key(fingerprint):
            _keys().ensure_record(db, created_by=current_user())
    except SSHKeyError as e:
        return error_response(e)
    except Exception as e:
        return error_response(e, 'Failed to restore SSH key backup')

    log_audit(current_user(), 'ssh_key.restored', f"Restored SSH key {fingerprint} from backup")
    return jsonify({'message': 'SSH key backup restored', 'fingerprint': fingerprint})


@bp.route('/api/ssh-keys/health', methods=['GET'])
@require_auth()
def get_key_health():
    keys = _keys()
    if not keys.exists():
        return jsonify({'keysGenerated': False, 'warning': 'SSH keys not found'})

    db = get_db()
    try:
        record = keys.ensure_record(db, created_by=current_user())
        active_ids = {c['id'] for c in db.get_clusters(status='active')}
        statuses = [s for s in db.get_key_cluster_statuses(record['id']) if s['cluster_id'] in active_ids]
        return jsonify(compute_key_health(record, len(active_ids), statuses))
    except SSHKeyError as e:
        return error_response(e)
    except Exception as e:
        return error_response(e, 'Failed to get SSH key health')


@bp.route('/api/ssh-keys/expiration', methods=['PUT'])
@require_auth()
def set_key_expiration():
    try:
        data = get_json_body()
        days = data.get('expirationDays')
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError('Invalid expiration days')
    except ValidationError as e:
        return error_response(e)

    keys = _keys()
    if not keys.exists():
        return jsonify({'error': 'SSH keys not found'}), 404

    db = get_db()
    try:
        record = keys.ensure_record(db, created_by=current_user())
        expires_at = expiration_from_days(days)
        db.set_ssh_key_expiration(record['fingerprint'], expires_at)
    except Exception as e:
        return error_response(e, 'Failed to set expiration')

    logging.info(f"[SSHKeys] Expiration of {record['fingerprint']} set to {expires_at}")
    log_audit(current_user(), 'ssh_key.expiration_set', f"{record['fingerprint']} expires in {days} days")
    return jsonify({'fingerprint': record['fingerprint'], 'expiresAt': expires_at, 'expirationDays': days})


@bp.route('/api/ssh-keys/clusters', methods=['GET'])
@require_auth()
def get_key_cluster_details():
    keys = _keys()
    if not keys.exists():
        return jsonify({'error': 'SSH keys not found on backend'}), 404

    db = get_db()
    try:
        record = db.get_ssh_key(keys.fingerprint())
        if not record:
            return jsonify({'error': 'SSH key record not found in database'}), 404
        status_map = {s['cluster_id']: s for s in db.get_key_cluster_statuses(record['id'])}

        clusters = []
        for cluster in db.get_clusters(status='active'):
            st = status_map.get(cluster['id']) or {}
            last_success = st.get('last_test_success')
            clusters.append({
                'id': cluster['id'],
                'name': cluster['name'],
                'host': cluster['host'],
                'location': cluster['location'],
                'status': cluster['status'],
                'sshKeyStatus': {
                    'isConfigured': bool(st.get('is_configured')),
                    'lastTested': st.get('last_tested_at'),
                    'lastTestSuccess': None if last_success is None else bool(last_success),
                    'lastPushed': st.get('last_push_at'),
                    'pushCount': st.get('push_count') or 0,
                    'authMethodLastUsed': st.get('auth_method_last_used') or 'unknown',
                    'lastAuth': st.get('last_auth_at'),
                },
            })
        return jsonify({'fingerprint': record['fingerprint'], 'clusters': clusters})
    except SSHKeyError as e:
        return error_response(e)
    except Exception as e:
        return error_response(e, 'Failed to get cluster details')
