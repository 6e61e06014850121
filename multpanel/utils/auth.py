# -*- coding: utf-8 -*-
"""
MultPanel Auth - Layer 3
Bearer token guard for the API. User management itself lives in the panel.
"""

import hmac
import logging
from functools import wraps

from flask import request, jsonify

from multpanel import globals as g


def validate_api_token(token: str) -> bool:
    if not token:
        return False
    # constant time compare against every configured token
    return any(hmac.compare_digest(token, known) for known in g.api_tokens)


def require_auth():
    """auth decorator for protected routes

    Authorization: Bearer <token>, acting user from X-Username.
    No tokens configured = auth disabled (dev setups).
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if g.api_tokens:
                auth_header = request.headers.get('Authorization', '')
                token = auth_header[7:] if auth_header.startswith('Bearer ') else ''
                if not validate_api_token(token):
                    logging.warning(f"Rejected API request to {request.path}: invalid or missing token")
                    return jsonify({'error': 'Unauthorized', 'code': 'AUTH_REQUIRED'}), 401

            request.session = {'user': request.headers.get('X-Username') or 'api'}
            return f(*args, **kwargs)
        return decorated_function
    return decorator
