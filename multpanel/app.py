# -*- coding: utf-8 -*-
"""
MultPanel Flask App Factory - Layer 8
Creates and configures the Flask application and runs the server.
"""

import os
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_compress import Compress

from multpanel.constants import VERSION, DEFAULT_PORT, MAX_REQUEST_SIZE, JOB_RETENTION_SECONDS
from multpanel import globals as g
from multpanel.api import register_blueprints
from multpanel.utils.ssh import get_ssh_connection_stats


def create_app(db=None, job_store=None, coordinator=None, key_manager=None):
    """Flask application factory.

    Everything can be injected (tests); by default the process-wide database,
    a fresh JobStore and a coordinator with the built-in operations are used.
    """
    from multpanel.core.db import get_db
    from multpanel.core.jobs import JobStore
    from multpanel.core.keys import SSHKeyManager
    from multpanel.core.operations import default_operations
    from multpanel.core.coordinator import BulkCoordinator

    app = Flask(__name__)

    # NS: only enable CORS if origins are explicitly set, otherwise same-origin
    if g._cors_origins_env:
        allowed_origins = [o.strip() for o in g._cors_origins_env.split(',') if o.strip() and o.strip() != '*']
        if allowed_origins:
            CORS(app, resources={
                r"/api/*": {
                    "origins": allowed_origins,
                    "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                    "allow_headers": ["Content-Type", "Authorization", "X-Username"],
                    "expose_headers": ["Content-Type"],
                }
            })

    # Gzip compression - job snapshots with many targets get big
    app.config['COMPRESS_MIMETYPES'] = ['application/json', 'text/plain']
    app.config['COMPRESS_LEVEL'] = 6
    app.config['COMPRESS_MIN_SIZE'] = 500
    Compress(app)

    app.config['MAX_CONTENT_LENGTH'] = MAX_REQUEST_SIZE

    if db is None:
        db = get_db()
    g.key_manager = key_manager or SSHKeyManager()
    g.job_store = job_store or JobStore()
    g.coordinator = coordinator or BulkCoordinator(
        g.job_store, default_operations(db, g.key_manager), db=db)

    @app.before_request
    def validate_request():
        if request.method in ['POST', 'PUT', 'PATCH'] and request.content_length:
            content_type = request.content_type or ''
            if 'application/json' not in content_type:
                return jsonify({'error': 'Invalid Content-Type'}), 415
        return None

    # Security headers
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Cache-Control'] = 'no-store'
        if request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({
            'status': 'ok',
            'version': VERSION,
            'jobs': len(g.job_store),
            'operations': g.coordinator.kinds(),
            'sshConnections': get_ssh_connection_stats(),
        })

    register_blueprints(app)

    return app


def main(debug_mode=False):
    """Main entry point - starts the MultPanel bulk operations server."""
    from multpanel.core.db import init_db
    from multpanel.background.retention import start_retention_thread

    # Configure logging
    log_level = logging.DEBUG if debug_mode else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s' if debug_mode else '%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not debug_mode:
        logging.getLogger('werkzeug').setLevel(logging.ERROR)
        logging.getLogger('gevent').setLevel(logging.ERROR)
        logging.getLogger('urllib3').setLevel(logging.ERROR)
        logging.getLogger('paramiko').setLevel(logging.WARNING)

    if debug_mode:
        print("=" * 50)
        print("DEBUG MODE ENABLED")
        print("=" * 50)

    GEVENT_AVAILABLE = False
    try:
        from gevent.pywsgi import WSGIServer
        GEVENT_AVAILABLE = True
        print("  ✓ gevent (high performance)")
    except ImportError:
        print("  ✗ gevent - using Flask dev server (slower)")

    if not g.api_tokens:
        print("WARNING: MULTPANEL_API_TOKENS is empty - API authentication is DISABLED")

    db = init_db()
    print(f"Database: {db.db_path}")

    app = create_app(db=db)
    print(f"Bulk operations: {', '.join(g.coordinator.kinds())}")

    start_retention_thread(g.job_store, max_age=JOB_RETENTION_SECONDS, db=db)
    print("Started job retention thread")

    port = DEFAULT_PORT
    bind_host = os.environ.get('MULTPANEL_HOST', '0.0.0.0')

    use_gevent = os.environ.get('MULTPANEL_SERVER', 'auto').lower()
    if GEVENT_AVAILABLE and use_gevent in ('auto', 'gevent'):
        print(f"Starting MultPanel {VERSION} with Gevent WSGIServer on http://{bind_host}:{port}")
        # NS: bots and dropped connections are not worth a traceback
        logging.getLogger('gevent.pywsgi').setLevel(logging.CRITICAL)
        server = WSGIServer((bind_host, port), app, log=None)
        server.serve_forever()
        return

    # Fallback to Flask development server
    print("Starting MultPanel with Flask development server")
    print("WARNING: Not recommended for production!")
    print(f"HTTP on http://{bind_host}:{port}")
    app.run(host=bind_host, port=port, debug=False, threaded=True)
