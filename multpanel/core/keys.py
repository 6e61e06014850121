# -*- coding: utf-8 -*-
"""
MultPanel SSH Keys - Layer 3
The service key pair that gets pushed to the clusters: generation, backup,
rotation, fingerprints and the health score shown on the clusters page.
"""

import os
import base64
import shutil
import hashlib
import logging
from datetime import datetime, timedelta

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from multpanel.constants import (
    SSH_DIR, SSH_PRIVATE_KEY_NAME, SSH_KEY_BITS, SSH_KEY_COMMENT,
    SSH_KEY_MAX_AGE_DAYS, SSH_KEY_EXPIRY_WARNING_DAYS, SSH_KEY_WORKING_RATIO_WARNING,
)
from multpanel.core.errors import SSHKeyError


def fingerprint_of(public_key: str) -> str:
    """SHA256 fingerprint, same format as ssh-keygen -lf"""
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise SSHKeyError('Malformed public key')
    try:
        blob = base64.b64decode(parts[1])
    except (ValueError, TypeError) as e:
        raise SSHKeyError(f'Malformed public key: {e}')
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode('ascii').rstrip('=')
    return f'SHA256:{digest}'


def _write_file(path, data: bytes, mode):
    # write next to the target and rename, a half written id_rsa is worse than none
    tmp = f'{path}.tmp'
    with open(tmp, 'wb') as f:
        f.write(data)
    os.chmod(tmp, mode)
    os.replace(tmp, path)


class SSHKeyManager:
    """owns id_rsa / id_rsa.pub (+ .backup copies) in the ssh dir"""

    def __init__(self, ssh_dir: str = None, bits: int = None, comment: str = None):
        self.ssh_dir = ssh_dir or SSH_DIR
        self.bits = bits or SSH_KEY_BITS
        self.comment = comment or SSH_KEY_COMMENT
        self.private_key_path = os.path.join(self.ssh_dir, SSH_PRIVATE_KEY_NAME)
        self.public_key_path = self.private_key_path + '.pub'
        self.backup_private_key_path = self.private_key_path + '.backup'
        self.backup_public_key_path = self.public_key_path + '.backup'

    def exists(self) -> bool:
        return os.path.exists(self.private_key_path) and os.path.exists(self.public_key_path)

    def has_backup(self) -> bool:
        return os.path.exists(self.backup_private_key_path) and os.path.exists(self.backup_public_key_path)

    def read_public_key(self) -> str:
        if not os.path.exists(self.public_key_path):
            raise SSHKeyError('SSH public key not found. Generate SSH keys first.')
        with open(self.public_key_path, 'r') as f:
            return f.read().strip()

    def fingerprint(self) -> str:
        return fingerprint_of(self.read_public_key())

    def generate(self, overwrite: bool = False) -> dict:
        """create a new RSA key pair. Without overwrite an existing pair is returned as is."""
        if self.exists() and not overwrite:
            public_key = self.read_public_key()
            return {'existing': True, 'publicKey': public_key, 'fingerprint': fingerprint_of(public_key)}

        os.makedirs(self.ssh_dir, exist_ok=True)
        os.chmod(self.ssh_dir, 0o700)

        key = rsa.generate_private_key(public_exponent=65537, key_size=self.bits)
        private_bytes = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_key = key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        ).decode('ascii') + f' {self.comment}'

        _write_file(self.private_key_path, private_bytes, 0o600)
        _write_file(self.public_key_path, (public_key + '\n').encode('ascii'), 0o644)

        fingerprint = fingerprint_of(public_key)
        logging.info(f"[SSHKeys] Generated RSA {self.bits} key pair: {fingerprint}")
        return {
            'existing': False,
            'publicKey': public_key,
            'fingerprint': fingerprint,
            'privateKeyPath': self.private_key_path,
            'publicKeyPath': self.public_key_path,
        }

    def backup(self):
        """copy the current pair to *.backup, returns the backup path (None if there is nothing to back up)"""
        if not self.exists():
            return None
        shutil.copy2(self.private_key_path, self.backup_private_key_path)
        shutil.copy2(self.public_key_path, self.backup_public_key_path)
        logging.info(f"[SSHKeys] Backed up SSH key pair to {self.backup_private_key_path}")
        return self.backup_private_key_path

    def restore_backup(self) -> str:
        if not self.has_backup():
            raise SSHKeyError('No SSH key backup available')
        shutil.copy2(self.backup_private_key_path, self.private_key_path)
        shutil.copy2(self.backup_public_key_path, self.public_key_path)
        os.chmod(self.private_key_path, 0o600)
        logging.warning(f"[SSHKeys] Restored SSH key pair from backup")
        return self.fingerprint()

    def rotate(self) -> dict:
        """backup + generate. On failure the previous pair is put back and SSHKeyError raised."""
        old_fingerprint = self.fingerprint() if self.exists() else None
        backup_path = self.backup()
        try:
            info = self.generate(overwrite=True)
        except Exception as e:
            if backup_path:
                try:
                    self.restore_backup()
                except Exception as restore_err:
                    logging.error(f"[SSHKeys] Restoring backup after failed rotation failed too: {restore_err}")
            raise SSHKeyError(f'Failed to generate new SSH key pair: {e}')
        info['previousFingerprint'] = old_fingerprint
        info['backupKeyPath'] = backup_path
        return info

    def ensure_record(self, db, created_by=None) -> dict:
        """ssh_keys row for the key on disk, created on first sight"""
        public_key = self.read_public_key()
        fingerprint = fingerprint_of(public_key)
        record = db.get_ssh_key(fingerprint)
        if not record:
            record = db.create_ssh_key(public_key, fingerprint, self.bits, created_by=created_by)
        return record


def _parse_ts(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def compute_key_health(record: dict, total_clusters: int, statuses: list, now: datetime = None) -> dict:
    """health report for one key record

    critical: expired. warning: expiring within 30 days, older than 90 days
    or working on less than 80% of the active clusters. Otherwise excellent
    when every cluster works with the key, good when not.
    """
    now = now or datetime.now()
    configured = sum(1 for s in statuses if s.get('is_configured'))
    working = sum(1 for s in statuses if s.get('is_configured') and s.get('last_test_success'))

    generated_at = _parse_ts(record.get('generated_at')) or now
    days_since_generation = (now - generated_at).days

    expires_at = _parse_ts(record.get('expires_at'))
    days_until_expiration = None
    expiration_warning = False
    if expires_at:
        days_until_expiration = (expires_at - now).days
        if days_until_expiration < SSH_KEY_EXPIRY_WARNING_DAYS:
            expiration_warning = True

    is_expired = record.get('status') == 'expired' or (expires_at is not None and expires_at <= now)

    warnings = []
    if expiration_warning and not is_expired:
        warnings.append(f'SSH key expires in {days_until_expiration} days')
    if is_expired:
        warnings.append('SSH key has expired')
    if days_since_generation > SSH_KEY_MAX_AGE_DAYS:
        warnings.append(f'SSH key is {days_since_generation} days old')
    if working < total_clusters:
        warnings.append(f'{total_clusters - working} clusters not using SSH key')

    if is_expired:
        status = 'critical'
    elif expiration_warning or days_since_generation > SSH_KEY_MAX_AGE_DAYS:
        status = 'warning'
    elif working < total_clusters * SSH_KEY_WORKING_RATIO_WARNING:
        status = 'warning'
    elif working == total_clusters:
        status = 'excellent'
    else:
        status = 'good'

    return {
        'keysGenerated': True,
        'fingerprint': record.get('fingerprint'),
        'keyAge': {
            'days': days_since_generation,
            'generatedAt': record.get('generated_at'),
            'lastRotatedAt': record.get('last_rotated_at'),
            'rotationCount': record.get('rotation_count') or 0,
        },
        'expiration': {
            'expiresAt': record.get('expires_at'),
            'daysUntilExpiration': days_until_expiration,
            'hasExpiration': expires_at is not None,
            'isExpired': is_expired,
        },
        'clusters': {
            'total': total_clusters,
            'configured': configured,
            'working': working,
            'notConfigured': max(0, total_clusters - configured),
            'configurationRate': (configured / total_clusters * 100) if total_clusters > 0 else 0,
        },
        'health': {
            'status': status,
            'warnings': warnings,
        },
        'lastUsed': record.get('last_used_at'),
    }


def expiration_from_days(days: int, now: datetime = None) -> str:
    return ((now or datetime.now()) + timedelta(days=days)).isoformat()
