# -*- coding: utf-8 -*-
"""
MultPanel Database - Layer 2
SQLite wrapper with AES-256-GCM encryption for cluster secrets.
"""
# MK: same approach as the panel db - thread-local connections, WAL, secrets encrypted

import os
import json
import hmac
import base64
import hashlib
import logging
import sqlite3
import threading
from datetime import datetime, timedelta

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from multpanel.constants import DATABASE_FILE, AES_KEY_FILE


class MultPanelDB:
    """
    SQLite database wrapper

    clusters, isos, ssh key bookkeeping, bulk operation history and the audit
    log live here. Running bulk jobs do NOT - those are in the in-memory
    JobStore, only their summary gets written once they are finished.
    """

    def __init__(self, db_path: str = None, key_file: str = None):
        self.db_path = db_path or DATABASE_FILE
        self.key_file = key_file or os.path.join(os.path.dirname(os.path.abspath(self.db_path)), os.path.basename(AES_KEY_FILE))
        self.aesgcm = None
        self.aes_key = None  # raw key, also used for audit HMAC
        self._local = threading.local()

        db_dir = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(db_dir, exist_ok=True)

        self._init_encryption()
        self._init_db()
        logging.info(f"DB initialized: {self.db_path}")

    def _init_encryption(self):
        """load or generate the AES-256 key"""
        aes_key = None
        if os.path.exists(self.key_file):
            with open(self.key_file, 'rb') as f:
                aes_key = f.read()
            if len(aes_key) != 32:
                # NS: never silently regenerate, existing secrets would be unreadable
                raise RuntimeError(f"Invalid AES key length in {self.key_file}")
        else:
            aes_key = os.urandom(32)
            with open(self.key_file, 'wb') as f:
                f.write(aes_key)
            try:
                os.chmod(self.key_file, 0o600)
            except OSError:
                pass
            logging.info("Generated new AES-256-GCM encryption key")

        self.aesgcm = AESGCM(aes_key)
        self.aes_key = aes_key

    def _get_connection(self):
        """thread-local connection, sqlite connections shouldn't be shared across threads"""
        if getattr(self._local, 'conn', None) is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.conn = conn
        return self._local.conn

    @property
    def conn(self):
        return self._get_connection()

    def close(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _init_db(self):
        conn = self.conn
        cursor = conn.cursor()

        try:
            if os.path.exists(self.db_path):
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logging.warning(f"Could not set database file permissions: {e}")

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS clusters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                host TEXT NOT NULL,
                port INTEGER DEFAULT 22,
                api_port INTEGER DEFAULT 8006,
                username TEXT NOT NULL,
                realm TEXT DEFAULT 'pam',
                pass_encrypted TEXT NOT NULL,
                ssl_verification INTEGER DEFAULT 0,
                location TEXT DEFAULT '',
                status TEXT DEFAULT 'active',
                created_at TEXT,
                updated_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS isos (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                filename TEXT NOT NULL,
                size_bytes INTEGER DEFAULT 0,
                cluster_id INTEGER NOT NULL,
                storage TEXT DEFAULT 'local',
                node TEXT DEFAULT '',
                company_id INTEGER,
                is_default INTEGER DEFAULT 0,
                description TEXT DEFAULT '',
                uploaded_by TEXT,
                created_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ssh_keys (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key_type TEXT DEFAULT 'rsa',
                key_size INTEGER DEFAULT 4096,
                public_key TEXT NOT NULL,
                fingerprint TEXT UNIQUE NOT NULL,
                status TEXT DEFAULT 'active',
                generated_at TEXT,
                expires_at TEXT,
                last_used_at TEXT,
                last_rotated_at TEXT,
                rotation_count INTEGER DEFAULT 0,
                created_by TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ssh_key_cluster_status (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ssh_key_id INTEGER NOT NULL,
                cluster_id INTEGER NOT NULL,
                is_configured INTEGER DEFAULT 0,
                last_tested_at TEXT,
                last_test_success INTEGER,
                last_push_at TEXT,
                push_count INTEGER DEFAULT 0,
                auth_method_last_used TEXT DEFAULT 'unknown',
                last_auth_at TEXT,
                UNIQUE(ssh_key_id, cluster_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS bulk_operations (
                id TEXT PRIMARY KEY,
                operation_type TEXT NOT NULL,
                source_id INTEGER,
                cluster_ids TEXT DEFAULT '[]',
                total_clusters INTEGER DEFAULT 0,
                success_count INTEGER DEFAULT 0,
                failure_count INTEGER DEFAULT 0,
                results TEXT DEFAULT '[]',
                status TEXT NOT NULL,
                error TEXT,
                started_at TEXT,
                completed_at TEXT,
                duration_seconds INTEGER,
                initiated_by TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user TEXT,
                action TEXT NOT NULL,
                details TEXT,
                ip_address TEXT,
                hmac_signature TEXT
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_isos_cluster ON isos(cluster_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_bulk_ops_started ON bulk_operations(started_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)')

        conn.commit()
        logging.debug("DB schema initialized")

    def _encrypt(self, data: str) -> str:
        """encrypt sensitive stuff"""
        if not data:
            return data
        nonce = os.urandom(12)
        ciphertext = self.aesgcm.encrypt(nonce, data.encode('utf-8'), None)
        return 'aes256:' + base64.b64encode(nonce + ciphertext).decode('utf-8')

    def _decrypt(self, data: str) -> str:
        if not data or not data.startswith('aes256:'):
            return data
        try:
            raw = base64.b64decode(data[7:])
            return self.aesgcm.decrypt(raw[:12], raw[12:], None).decode('utf-8')
        except Exception as e:
            logging.error(f"AES-256-GCM decryption failed: {e}")
            return ''

    # ========================================
    # CLUSTER OPERATIONS
    # ========================================

    def _row_to_cluster(self, row, include_secret=False) -> dict:
        cluster = {
            'id': row['id'],
            'name': row['name'],
            'host': row['host'],
            'port': row['port'] or 22,
            'api_port': row['api_port'] or 8006,
            'username': row['username'],
            'realm': row['realm'] or 'pam',
            'ssl_verification': bool(row['ssl_verification']),
            'location': row['location'] or '',
            'status': row['status'],
            'created_at': row['created_at'],
        }
        if include_secret:
            cluster['password'] = self._decrypt(row['pass_encrypted'])
        return cluster

    def get_clusters(self, status: str = None, include_secret: bool = False) -> list:
        """clusters ordered by id (this order is the bulk target order)"""
        cursor = self.conn.cursor()
        if status:
            cursor.execute('SELECT * FROM clusters WHERE status = ? ORDER BY id', (status,))
        else:
            cursor.execute('SELECT * FROM clusters ORDER BY id')
        return [self._row_to_cluster(r, include_secret) for r in cursor.fetchall()]

    def get_cluster(self, cluster_id: int, include_secret: bool = False) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM clusters WHERE id = ?', (cluster_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_cluster(row, include_secret)

    def add_cluster(self, data: dict) -> int:
        cursor = self.conn.cursor()
        now = datetime.now().isoformat()
        cursor.execute('''
            INSERT INTO clusters
            (name, host, port, api_port, username, realm, pass_encrypted,
             ssl_verification, location, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            data['name'],
            data['host'],
            int(data.get('port') or 22),
            int(data.get('api_port') or 8006),
            data['user'],
            data.get('realm') or 'pam',
            self._encrypt(data['pass']),
            1 if data.get('ssl_verification', False) else 0,
            data.get('location', ''),
            data.get('status', 'active'),
            now, now,
        ))
        self.conn.commit()
        return cursor.lastrowid

    def delete_cluster(self, cluster_id: int) -> bool:
        cursor = self.conn.cursor()
        cursor.execute('DELETE FROM ssh_key_cluster_status WHERE cluster_id = ?', (cluster_id,))
        cursor.execute('DELETE FROM clusters WHERE id = ?', (cluster_id,))
        deleted = cursor.rowcount > 0
        self.conn.commit()
        return deleted

    # ========================================
    # ISO OPERATIONS
    # ========================================

    def get_iso(self, iso_id: int) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM isos WHERE id = ?', (iso_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def add_iso(self, data: dict) -> int:
        cursor = self.conn.cursor()
        cursor.execute('''
            INSERT INTO isos
            (name, filename, size_bytes, cluster_id, storage, node, company_id,
             is_default, description, uploaded_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            data['name'],
            data['filename'],
            data.get('size_bytes', 0),
            data['cluster_id'],
            data.get('storage', 'local'),
            data.get('node', ''),
            data.get('company_id'),
            1 if data.get('is_default') else 0,
            data.get('description', ''),
            data.get('uploaded_by'),
            datetime.now().isoformat(),
        ))
        self.conn.commit()
        return cursor.lastrowid

    # ========================================
    # SSH KEY OPERATIONS
    # ========================================

    def get_ssh_key(self, fingerprint: str) -> dict:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM ssh_keys WHERE fingerprint = ?', (fingerprint,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_active_ssh_key(self) -> dict:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM ssh_keys WHERE status = 'active' ORDER BY generated_at DESC, id DESC LIMIT 1")
        row = cursor.fetchone()
        return dict(row) if row else None

    def create_ssh_key(self, public_key: str, fingerprint: str, key_size: int, created_by: str = None,
                       rotation_count: int = 0, last_rotated_at: str = None, expires_at: str = None) -> dict:
        cursor = self.conn.cursor()
        now = datetime.now().isoformat()
        cursor.execute('''
            INSERT INTO ssh_keys
            (key_type, key_size, public_key, fingerprint, status, generated_at,
             expires_at, last_rotated_at, rotation_count, created_by)
            VALUES ('rsa', ?, ?, ?, 'active', ?, ?, ?, ?, ?)
        ''', (key_size, public_key, fingerprint, now, expires_at, last_rotated_at, rotation_count, created_by))
        self.conn.commit()
        return self.get_ssh_key(fingerprint)

    def rotate_ssh_key(self, old_fingerprint: str, public_key: str, fingerprint: str,
                       key_size: int, created_by: str = None) -> dict:
        """mark the old key rotated and register the new one as active - one transaction"""
        conn = self.conn
        cursor = conn.cursor()
        now = datetime.now().isoformat()
        rotation_count = 0
        old = self.get_ssh_key(old_fingerprint) if old_fingerprint else None
        if old:
            rotation_count = (old.get('rotation_count') or 0) + 1
        try:
            cursor.execute("UPDATE ssh_keys SET status = 'rotated' WHERE status = 'active'")
            cursor.execute('''
                INSERT INTO ssh_keys
                (key_type, key_size, public_key, fingerprint, status, generated_at,
                 last_rotated_at, rotation_count, created_by)
                VALUES ('rsa', ?, ?, ?, 'active', ?, ?, ?, ?)
            ''', (key_size, public_key, fingerprint, now, now, rotation_count, created_by))
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        return self.get_ssh_key(fingerprint)

    def activate_ssh_key(self, fingerprint: str) -> bool:
        """make fingerprint the active key again (after restoring a backup)"""
        cursor = self.conn.cursor()
        cursor.execute("UPDATE ssh_keys SET status = 'rotated' WHERE status = 'active' AND fingerprint != ?", (fingerprint,))
        cursor.execute("UPDATE ssh_keys SET status = 'active' WHERE fingerprint = ?", (fingerprint,))
        found = cursor.rowcount > 0
        self.conn.commit()
        return found

    def set_ssh_key_expiration(self, fingerprint: str, expires_at: str):
        cursor = self.conn.cursor()
        cursor.execute('UPDATE ssh_keys SET expires_at = ? WHERE fingerprint = ?', (expires_at, fingerprint))
        self.conn.commit()

    def mark_ssh_key_used(self, key_id: int):
        cursor = self.conn.cursor()
        cursor.execute('UPDATE ssh_keys SET last_used_at = ? WHERE id = ?', (datetime.now().isoformat(), key_id))
        self.conn.commit()

    def get_key_cluster_statuses(self, key_id: int) -> list:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM ssh_key_cluster_status WHERE ssh_key_id = ? ORDER BY cluster_id', (key_id,))
        return [dict(r) for r in cursor.fetchall()]

    def record_key_push(self, key_id: int, cluster_id: int):
        """key landed in authorized_keys on that cluster"""
        cursor = self.conn.cursor()
        now = datetime.now().isoformat()
        cursor.execute('''
            INSERT INTO ssh_key_cluster_status (ssh_key_id, cluster_id, is_configured, last_push_at, push_count)
            VALUES (?, ?, 1, ?, 1)
            ON CONFLICT(ssh_key_id, cluster_id) DO UPDATE SET
                is_configured = 1,
                last_push_at = excluded.last_push_at,
                push_count = push_count + 1
        ''', (key_id, cluster_id, now))
        self.conn.commit()

    def record_key_auth(self, key_id: int, cluster_id: int, auth_method: str, success: bool):
        """result of a connection test - key auth success also counts as configured"""
        cursor = self.conn.cursor()
        now = datetime.now().isoformat()
        configured = 1 if (auth_method == 'ssh_key' and success) else 0
        cursor.execute('''
            INSERT INTO ssh_key_cluster_status
            (ssh_key_id, cluster_id, is_configured, last_tested_at, last_test_success, auth_method_last_used, last_auth_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(ssh_key_id, cluster_id) DO UPDATE SET
                is_configured = MAX(is_configured, excluded.is_configured),
                last_tested_at = excluded.last_tested_at,
                last_test_success = excluded.last_test_success,
                auth_method_last_used = excluded.auth_method_last_used,
                last_auth_at = excluded.last_auth_at
        ''', (key_id, cluster_id, configured, now, 1 if success else 0, auth_method, now))
        self.conn.commit()
        if auth_method == 'ssh_key' and success:
            self.mark_ssh_key_used(key_id)

    # ========================================
    # BULK OPERATION HISTORY
    # ========================================

    def save_bulk_operation(self, summary: dict):
        cursor = self.conn.cursor()
        cursor.execute('''
            INSERT OR REPLACE INTO bulk_operations
            (id, operation_type, source_id, cluster_ids, total_clusters, success_count,
             failure_count, results, status, error, started_at, completed_at,
             duration_seconds, initiated_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            summary['id'],
            summary['operation_type'],
            summary.get('source_id'),
            json.dumps(summary.get('cluster_ids', [])),
            summary.get('total_clusters', 0),
            summary.get('success_count', 0),
            summary.get('failure_count', 0),
            json.dumps(summary.get('results', [])),
            summary['status'],
            summary.get('error'),
            summary.get('started_at'),
            summary.get('completed_at'),
            summary.get('duration_seconds'),
            summary.get('initiated_by'),
        ))
        self.conn.commit()

    def get_bulk_operations(self, limit: int = 50) -> list:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM bulk_operations ORDER BY started_at DESC LIMIT ?', (limit,))
        operations = []
        for row in cursor.fetchall():
            op = dict(row)
            op['cluster_ids'] = json.loads(op['cluster_ids'] or '[]')
            op['results'] = json.loads(op['results'] or '[]')
            operations.append(op)
        return operations

    # ========================================
    # AUDIT LOG OPERATIONS (with HMAC Integrity)
    # ========================================

    def _generate_audit_hmac(self, timestamp: str, user: str, action: str, details: str, ip: str) -> str:
        data = f"{timestamp}|{user or ''}|{action}|{details or ''}|{ip or ''}"
        return hmac.new(self.aes_key, data.encode('utf-8'), hashlib.sha256).hexdigest()

    def add_audit_entry(self, user: str, action: str, details: str = '', ip: str = ''):
        cursor = self.conn.cursor()
        timestamp = datetime.now().isoformat()
        signature = self._generate_audit_hmac(timestamp, user, action, details, ip)
        cursor.execute('''
            INSERT INTO audit_log (timestamp, user, action, details, ip_address, hmac_signature)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (timestamp, user, action, details, ip, signature))
        self.conn.commit()

    def get_audit_log(self, limit: int = 1000, action: str = None) -> list:
        cursor = self.conn.cursor()
        if action:
            cursor.execute('SELECT * FROM audit_log WHERE action LIKE ? ORDER BY id DESC LIMIT ?', (f'%{action}%', limit))
        else:
            cursor.execute('SELECT * FROM audit_log ORDER BY id DESC LIMIT ?', (limit,))
        return [dict(r) for r in cursor.fetchall()]

    def cleanup_audit_log(self, days: int = 90) -> int:
        cursor = self.conn.cursor()
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        cursor.execute('DELETE FROM audit_log WHERE timestamp < ?', (cutoff,))
        deleted = cursor.rowcount
        self.conn.commit()
        return deleted


_db = None
_db_lock = threading.Lock()


def init_db(db_path: str = None, key_file: str = None) -> MultPanelDB:
    """(re)create the process-wide database instance"""
    global _db
    with _db_lock:
        _db = MultPanelDB(db_path, key_file)
    return _db


def get_db() -> MultPanelDB:
    global _db
    if _db is None:
        with _db_lock:
            if _db is None:
                _db = MultPanelDB()
    return _db
