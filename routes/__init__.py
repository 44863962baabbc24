"""Flask blueprints."""

from __future__ import annotations


def register_blueprints(app):
    """Register every blueprint with the application."""
    from .pipeline import pipeline_bp

    app.register_blueprint(pipeline_bp)
