# -*- coding: utf-8 -*-
"""
MultPanel SSH Utilities - Layer 2
SSH command execution, SFTP transfers and connection tracking for cluster nodes.
"""

import os
import shlex
import logging
import threading

import paramiko

from multpanel.constants import SSH_CONNECT_TIMEOUT

_ssh_active_connections = {'password': 0, 'ssh_key': 0}
_ssh_connection_lock = threading.Lock()

KEY_VERIFIED_MARKER = 'SSH_KEY_VERIFIED'
KEY_MISSING_MARKER = 'SSH_KEY_NOT_FOUND'


def get_ssh_connection_stats():
    """Get current SSH connection statistics"""
    with _ssh_connection_lock:
        return {
            'active_password': _ssh_active_connections['password'],
            'active_ssh_key': _ssh_active_connections['ssh_key'],
            'total_active': _ssh_active_connections['password'] + _ssh_active_connections['ssh_key'],
        }


def _ssh_track_connection(conn_type: str, delta: int):
    with _ssh_connection_lock:
        _ssh_active_connections[conn_type] = max(0, _ssh_active_connections[conn_type] + delta)


def ssh_username(cluster):
    """root@pam -> root"""
    return (cluster.get('username') or 'root').split('@')[0]


def _connect(host, user, password=None, key_path=None, port=22, timeout=SSH_CONNECT_TIMEOUT):
    """open an authenticated SSHClient - key auth if key_path is given, password otherwise"""
    client = paramiko.SSHClient()
    # MK: clusters get re-installed all the time, known_hosts pinning caused more trouble than it solved
    client.set_missing_host_key_policy(paramiko.WarningPolicy())
    kwargs = {
        'hostname': host,
        'port': port,
        'username': user,
        'timeout': timeout,
        'banner_timeout': timeout,
        'auth_timeout': timeout,
        'allow_agent': False,
        'look_for_keys': False,
    }
    if key_path:
        kwargs['key_filename'] = key_path
    else:
        kwargs['password'] = password
    try:
        client.connect(**kwargs)
    except Exception:
        client.close()
        raise
    return client


def ssh_exec(host, user, cmd, password=None, key_path=None, port=22, timeout=30):
    """Execute command on remote host via SSH.

    Returns (rc, stdout, stderr). Connection/auth problems come back as rc=1
    with the error in stderr, callers only have to look at rc.
    """
    conn_type = 'ssh_key' if key_path else 'password'
    try:
        client = _connect(host, user, password=password, key_path=key_path, port=port,
                          timeout=min(timeout, SSH_CONNECT_TIMEOUT))
    except Exception as e:
        logging.debug(f"[SSH] connect to {user}@{host}:{port} ({conn_type}) failed: {e}")
        return 1, '', str(e) or e.__class__.__name__

    _ssh_track_connection(conn_type, 1)
    try:
        stdin, stdout, stderr = client.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode('utf-8', errors='replace')
        err = stderr.read().decode('utf-8', errors='replace')
        rc = stdout.channel.recv_exit_status()
        return rc, out, err
    except Exception as e:
        return 1, '', f'exec failed: {e}'
    finally:
        client.close()
        _ssh_track_connection(conn_type, -1)


def ssh_exec_with_fallback(host, user, password, cmd, key_path=None, port=22, timeout=30):
    """try the service key first, fall back to password auth

    Returns (rc, stdout, stderr, auth_method) with auth_method 'ssh_key' or 'password'.
    """
    if key_path and os.path.exists(key_path):
        rc, out, err = ssh_exec(host, user, cmd, key_path=key_path, port=port, timeout=timeout)
        if rc == 0:
            return rc, out, err, 'ssh_key'
        logging.debug(f"[SSH] key auth to {host} failed ({err.strip()[:80]}), trying password")
    rc, out, err = ssh_exec(host, user, cmd, password=password, port=port, timeout=timeout)
    return rc, out, err, 'password'


def sftp_get(host, user, password, remote_path, local_path, port=22):
    """download one file, raises on any error"""
    client = _connect(host, user, password=password, port=port)
    _ssh_track_connection('password', 1)
    try:
        sftp = client.open_sftp()
        try:
            sftp.get(remote_path, local_path)
        finally:
            sftp.close()
    finally:
        client.close()
        _ssh_track_connection('password', -1)


class TransferAborted(Exception):
    pass


def sftp_put(host, user, password, local_path, remote_path, port=22, abort=None):
    """upload one file, raises on any error. Returns remote size in bytes.

    abort is polled on every progress callback; when it returns True the
    transfer stops, the partial remote file is removed and TransferAborted raised.
    """
    def _progress(sent, total):
        if abort is not None and abort():
            raise TransferAborted(f'Upload of {remote_path} aborted after {sent}/{total} bytes')

    client = _connect(host, user, password=password, port=port)
    _ssh_track_connection('password', 1)
    try:
        sftp = client.open_sftp()
        try:
            try:
                attrs = sftp.put(local_path, remote_path, callback=_progress, confirm=True)
            except TransferAborted:
                try:
                    sftp.remove(remote_path)
                except OSError as e:
                    logging.warning(f"[SSH] could not remove partial upload {remote_path} on {host}: {e}")
                raise
            return attrs.st_size
        finally:
            sftp.close()
    finally:
        client.close()
        _ssh_track_connection('password', -1)


def build_authorized_keys_command(public_key: str) -> str:
    """append + dedupe + verify, prints KEY_VERIFIED_MARKER when the key is in place"""
    public_key = public_key.strip()
    parts = public_key.split()
    if len(parts) < 2:
        raise ValueError('not an OpenSSH public key')
    # grep -F on a chunk of the base64 body, full line matching breaks on trailing comments
    needle = parts[1][:50]
    return ' && '.join([
        'mkdir -p ~/.ssh',
        'chmod 700 ~/.ssh',
        f'echo {shlex.quote(public_key)} >> ~/.ssh/authorized_keys',
        'chmod 600 ~/.ssh/authorized_keys',
        'sort -u ~/.ssh/authorized_keys -o ~/.ssh/authorized_keys',
        f'(grep -qF {shlex.quote(needle)} ~/.ssh/authorized_keys && echo {KEY_VERIFIED_MARKER} || echo {KEY_MISSING_MARKER})',
    ])
