"""
Blueprint registration for the tutor portal API.

All blueprints are registered without URL prefixes; every route spells out
its full ``/api/...`` path so the frontend's URLs stay stable.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.users import bp as users_bp
    from blueprints.lessons import bp as lessons_bp
    from blueprints.upload import bp as upload_bp
    from blueprints.tracking import bp as tracking_bp
    from blueprints.progress import bp as progress_bp
    from blueprints.tutor import bp as tutor_bp
    from blueprints.invitations import bp as invitations_bp
    from blueprints.billing import bp as billing_bp

    app.register_blueprint(users_bp)
    app.register_blueprint(lessons_bp)
    app.register_blueprint(upload_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(progress_bp)
    app.register_blueprint(tutor_bp)
    app.register_blueprint(invitations_bp)
    app.register_blueprint(billing_bp)
