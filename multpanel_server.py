#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MultPanel Bulk Operations Server - cross-cluster fan-out backend for Proxmox VE

Copyright (C) 2025-2026 MultPanel Team

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program. If not, see <https://www.gnu.org/licenses/>.

═══════════════════════════════════════════════════════════════════════════════

ISO sync, SSH key rotation, SSH key bulk push and connection tests against
many clusters at once. Jobs run in the background, the panel polls them.

═══════════════════════════════════════════════════════════════════════════════
"""

# CRITICAL: Gevent MUST be first!! dont move this!! - NS
import os
import sys

USE_GEVENT = os.environ.get('MULTPANEL_NO_GEVENT', '').lower() not in ('1', 'true', 'yes')

if USE_GEVENT:
    try:
        from gevent import monkey
        monkey.patch_all()
        print("Gevent monkey-patching applied")
    except ImportError:
        pass


if __name__ == '__main__':
    if '--help' in sys.argv or '-h' in sys.argv:
        print("""
MultPanel Bulk Operations Server

Usage:
  python multpanel_server.py [options]

Options:
  --debug           verbose logging
  --help, -h        this message

Env vars:
  MULTPANEL_CONFIG_DIR           database + AES key (default ./config)
  MULTPANEL_SSH_DIR              service key pair (default <config>/ssh)
  MULTPANEL_API_TOKENS           comma separated bearer tokens (empty = no auth!)
  MULTPANEL_ALLOWED_ORIGINS      cors origins
  MULTPANEL_BULK_TARGET_TIMEOUT  seconds per cluster (default 60)
  MULTPANEL_BULK_MAX_WORKERS     parallel clusters per job (default 8)
  MULTPANEL_JOB_RETENTION        seconds a finished job stays pollable (default 86400)
  MULTPANEL_PORT / MULTPANEL_HOST
        """)
    else:
        debug_mode = '--debug' in sys.argv
        try:
            from multpanel.app import main
        except ImportError as e:
            print(f"\n  Missing dependency: {e}")
            print(f"\n  Install it first:")
            print(f"    pip install -e .\n")
            sys.exit(1)
        main(debug_mode=debug_mode)
