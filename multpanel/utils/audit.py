# -*- coding: utf-8 -*-
"""
MultPanel Audit Logging - Layer 3
"""

import logging

from flask import request, has_request_context

from multpanel.constants import AUDIT_RETENTION_DAYS
from multpanel.core.db import get_db


def log_audit(user: str, action: str, details: str = None, ip_address: str = None, cluster: str = None, db=None):
    """Add an entry to the audit log"""
    ip = ip_address or get_client_ip()
    cluster_info = f" [{cluster}]" if cluster else ""
    try:
        (db or get_db()).add_audit_entry(
            user=user,
            action=action,
            details=f"{details or ''}{cluster_info}",
            ip=ip,
        )
    except Exception as e:
        logging.error(f"Failed to save audit entry to database: {e}")

    logging.info(f"Audit: {user} - {action}{cluster_info} - {details}")


def cleanup_audit_log(db=None):
    """Remove audit entries older than retention period"""
    try:
        deleted = (db or get_db()).cleanup_audit_log(days=AUDIT_RETENTION_DAYS)
        if deleted > 0:
            logging.info(f"Cleaned up {deleted} old audit log entries")
    except Exception as e:
        logging.error(f"Failed to cleanup audit log: {e}")


def _is_loopback(addr):
    return addr in ('127.0.0.1', '::1')


def get_client_ip():
    """client IP of the current request, 'system' for background threads

    X-Forwarded-For is only trusted when the request comes from loopback (reverse proxy)
    """
    if not has_request_context():
        return 'system'
    if _is_loopback(request.remote_addr):
        if request.headers.get('X-Forwarded-For'):
            return request.headers.get('X-Forwarded-For').split(',')[0].strip()
        elif request.headers.get('X-Real-IP'):
            return request.headers.get('X-Real-IP')
    return request.remote_addr
