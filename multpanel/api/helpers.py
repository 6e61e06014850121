# -*- coding: utf-8 -*-
"""shared bits for the blueprints - error mapping, current user, request parsing"""

import logging

from flask import jsonify, request

from multpanel import globals as g
from multpanel.core.errors import (
    ValidationError, UnknownOperationError, JobNotFoundError, ClusterNotFoundError, SSHKeyError,
)


def safe_error(e, default_msg='An internal error occurred'):
    """Return a safe error message for API responses.
    Logs the full exception, the client only gets the generic message.
    """
    logging.error(f"[API] {default_msg}: {e}", exc_info=True)
    return default_msg


def error_response(e, default_msg='An internal error occurred'):
    """domain exception -> (json, status)"""
    if isinstance(e, ValidationError):
        return jsonify({'error': str(e)}), 400
    if isinstance(e, UnknownOperationError):
        return jsonify({'error': f'Unknown bulk operation: {e}'}), 404
    if isinstance(e, JobNotFoundError):
        return jsonify({'error': 'Job not found'}), 404
    if isinstance(e, ClusterNotFoundError):
        return jsonify({'error': 'Cluster not found'}), 404
    if isinstance(e, SSHKeyError):
        return jsonify({'error': str(e)}), 400
    return jsonify({'error': safe_error(e, default_msg)}), 500


def current_user():
    usr = getattr(request, 'session', None) or {}
    return usr.get('user', 'system')


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def get_coordinator():
    if g.coordinator is None:
        raise RuntimeError('bulk coordinator not initialized')
    return g.coordinator
