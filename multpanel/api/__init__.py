# -*- coding: utf-8 -*-
"""MultPanel API blueprints"""


def register_blueprints(app):
    from multpanel.api.bulk_ops import bp as bulk_ops_bp
    from multpanel.api.ssh_keys import bp as ssh_keys_bp
    from multpanel.api.clusters import bp as clusters_bp

    app.register_blueprint(bulk_ops_bp)
    app.register_blueprint(ssh_keys_bp)
    app.register_blueprint(clusters_bp)
