# -*- coding: utf-8 -*-
"""
MultPanel job retention - Layer 6
Finished bulk jobs stay pollable for a while, then get dropped from memory.
Their summary is already in bulk_operations at that point.
"""

import time
import logging
import threading

from multpanel.constants import JOB_RETENTION_SECONDS, JOB_RETENTION_CHECK_INTERVAL
from multpanel.utils.audit import cleanup_audit_log


def run_retention_once(store, max_age=None, db=None) -> int:
    removed = store.purge(max_age if max_age is not None else JOB_RETENTION_SECONDS)
    cleanup_audit_log(db=db)
    return removed


def start_retention_thread(store, interval=None, max_age=None, db=None):
    interval = interval or JOB_RETENTION_CHECK_INTERVAL

    def retention_loop():
        while True:
            time.sleep(interval)
            try:
                run_retention_once(store, max_age, db=db)
            except Exception as e:
                logging.error(f"[BulkOps] Retention pass failed: {e}")

    thread = threading.Thread(target=retention_loop, daemon=True, name='bulk-retention')
    thread.start()
    return thread
