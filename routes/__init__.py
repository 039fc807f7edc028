# Routes package - registers all blueprints with the Flask app

def register_blueprints(app):
    """Register all route blueprints with the Flask app."""
    from .morse import morse_bp

    app.register_blueprint(morse_bp)
