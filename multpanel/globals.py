# -*- coding: utf-8 -*-
"""
MultPanel shared runtime state - Layer 1
Set up once by create_app(), read by the blueprints.
"""

from multpanel.constants import API_TOKENS_ENV, CORS_ORIGINS_ENV

# BulkCoordinator / JobStore for this process (see core/coordinator.py)
coordinator = None
job_store = None

# NS: tokens are loaded from env, empty set = auth disabled (dev only!)
api_tokens = set(t.strip() for t in API_TOKENS_ENV.split(',') if t.strip())

_cors_origins_env = CORS_ORIGINS_ENV

# service SSH key pair on disk (core/keys.py), shared by API and bulk operations
key_manager = None
