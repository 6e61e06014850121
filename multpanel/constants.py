# -*- coding: utf-8 -*-
"""
MultPanel Constants - Layer 0
Paths, env-driven tunables and thresholds. No imports from the package here.
"""

import os

from multpanel import MULTPANEL_VERSION

VERSION = MULTPANEL_VERSION

# Directories
CONFIG_DIR = os.environ.get('MULTPANEL_CONFIG_DIR', os.path.join(os.getcwd(), 'config'))
DATABASE_FILE = os.path.join(CONFIG_DIR, 'multpanel.db')
AES_KEY_FILE = os.path.join(CONFIG_DIR, '.multpanel_aes256.key')
ISO_STAGING_DIR = os.environ.get('MULTPANEL_ISO_STAGING_DIR', '/tmp')

# Service SSH key pair - this is what gets pushed to authorized_keys on the clusters
SSH_DIR = os.environ.get('MULTPANEL_SSH_DIR', os.path.join(CONFIG_DIR, 'ssh'))
SSH_PRIVATE_KEY_NAME = 'id_rsa'
SSH_KEY_BITS = int(os.environ.get('MULTPANEL_SSH_KEY_BITS', 4096))
SSH_KEY_COMMENT = os.environ.get('MULTPANEL_SSH_KEY_COMMENT', 'nat-backend@multpanel')
SSH_CONNECT_TIMEOUT = int(os.environ.get('MULTPANEL_SSH_CONNECT_TIMEOUT', 15))

# SSH key health thresholds
SSH_KEY_MAX_AGE_DAYS = 90
SSH_KEY_EXPIRY_WARNING_DAYS = 30
SSH_KEY_WORKING_RATIO_WARNING = 0.8

# Bulk operations
# MK: one dead cluster used to block a whole rotation for minutes, keep this bounded
BULK_TARGET_TIMEOUT = float(os.environ.get('MULTPANEL_BULK_TARGET_TIMEOUT', 60))
# ISO uploads are multi-GB, the generic per-target timeout would cut them off
ISO_SYNC_TARGET_TIMEOUT = float(os.environ.get('MULTPANEL_ISO_SYNC_TIMEOUT', 3600))
BULK_MAX_WORKERS = int(os.environ.get('MULTPANEL_BULK_MAX_WORKERS', 8))
JOB_RETENTION_SECONDS = int(os.environ.get('MULTPANEL_JOB_RETENTION', 86400))
JOB_RETENTION_CHECK_INTERVAL = 300
BULK_POLL_INTERVAL_MS = 2000  # what the UI polls with, returned as a hint on submit

# Proxmox
PROXMOX_API_PORT = 8006
PROXMOX_API_TIMEOUT = 10
ISO_TEMPLATE_SUBDIR = 'template/iso'  # below the storage path, same layout on every dir-like storage

# Server
DEFAULT_PORT = int(os.environ.get('MULTPANEL_PORT', 5000))
API_TOKENS_ENV = os.environ.get('MULTPANEL_API_TOKENS', '')
CORS_ORIGINS_ENV = os.environ.get('MULTPANEL_ALLOWED_ORIGINS', '')
MAX_REQUEST_SIZE = int(os.environ.get('MULTPANEL_MAX_REQUEST_SIZE', 10 * 1024 * 1024))

AUDIT_RETENTION_DAYS = 90
