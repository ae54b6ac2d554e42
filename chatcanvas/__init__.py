import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect
from werkzeug.middleware.profiler import ProfilerMiddleware

from config import DevelopmentConfig, ProductionConfig

db = SQLAlchemy()
login_manager = LoginManager()
csrf = CSRFProtect()


def create_app(config_class=None):
    app = Flask(__name__)
    if config_class is None:
        flask_env = os.getenv("FLASK_ENV", "production").lower()
        config_class = DevelopmentConfig if flask_env == "development" else ProductionConfig
    app.config.from_object(config_class)
    config_class.init_app(app)

    profile_env = os.getenv("FLASK_PROFILING", "false").lower()
    if profile_env == "true":
        app.wsgi_app = ProfilerMiddleware(app.wsgi_app, restrictions=[5])

    csrf.init_app(app)
    CORS(app)
    db.init_app(app)
    Migrate(app, db)

    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"status": "error", "error_type": "unauthorized", "message": "Authentication required."}), 401

    with app.app_context():
        from chatcanvas.models import chat_models, image_models, user_models  # noqa: F401
        from chatcanvas.modules.auth import auth
        from chatcanvas.modules.chat import chat
        from chatcanvas.modules.credit import credit
        from chatcanvas.modules.gallery import gallery
        from chatcanvas.modules.image import image
        from chatcanvas.utils.error_util import register_error_handlers

        app.register_blueprint(auth.auth_bp)
        app.register_blueprint(chat.chat_bp)
        app.register_blueprint(image.image_bp)
        app.register_blueprint(gallery.gallery_bp)
        app.register_blueprint(credit.credit_bp)
        register_error_handlers(app)

        @app.teardown_request
        def session_teardown(exception=None):
            if exception:
                db.session.rollback()
            db.session.remove()

        @app.route("/health")
        def health():
            return jsonify({"status": "success"})

        db.create_all()

    return app
