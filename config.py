import os
from datetime import timedelta
from urllib.parse import quote_plus

import cloudinary

basedir = os.path.abspath(os.path.dirname(__file__))

DEFAULT_ALLOWED_IMAGE_DOMAINS = (
    "res.cloudinary.com,"
    "supabase.co,"
    "amazonaws.com,"
    "cloudflare.com,"
    "googleapis.com,"
    "googleusercontent.com,"
    "replicate.delivery"
)


def _domain_list(raw):
    return tuple(domain.strip().lower() for domain in raw.split(",") if domain.strip())


class Config(object):
    FLASK_ENV = os.getenv("FLASK_ENV")
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY")
    SESSION_PERMANENT = True
    PERMANENT_SESSION_LIFETIME = timedelta(days=30)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_recycle": 299,
        "pool_pre_ping": True,
        "pool_timeout": 20,
        "pool_reset_on_return": "rollback",
    }

    # JSON API; the bearer token is the credential
    WTF_CSRF_ENABLED = False

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    SQL_HOSTNAME = os.getenv("SQL_HOSTNAME")
    SQL_USERNAME = os.getenv("SQL_USERNAME")
    SQL_PASSWORD = quote_plus(os.getenv("SQL_PASSWORD", ""))  # URL-encode the password
    SQL_DB_NAME = os.getenv("SQL_DB_NAME")

    CLOUD_NAME = os.getenv("CLOUD_NAME")
    CLOUD_API_KEY = os.getenv("CLOUDINARY_API_KEY")
    CLOUD_SECRET = os.getenv("CLOUDINARY_SECRET")
    CLOUD_UPLOAD_FOLDER = os.getenv("CLOUDINARY_FOLDER", "chatcanvas")

    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

    REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN")
    REPLICATE_MODEL = os.getenv("REPLICATE_MODEL", "black-forest-labs/flux-kontext-pro")
    REPLICATE_TIMEOUT = float(os.getenv("REPLICATE_TIMEOUT", "120"))
    REPLICATE_POLL_INTERVAL = float(os.getenv("REPLICATE_POLL_INTERVAL", "2"))
    REPLICATE_POLL_ATTEMPTS = int(os.getenv("REPLICATE_POLL_ATTEMPTS", "60"))

    ALLOWED_IMAGE_DOMAINS = _domain_list(os.getenv("ALLOWED_IMAGE_DOMAINS", DEFAULT_ALLOWED_IMAGE_DOMAINS))
    MAX_PROMPT_LENGTH = 500
    MAX_MESSAGE_LENGTH = 1000
    MAX_UPLOAD_SIZE = 10 * 1024 * 1024
    MAX_CONTENT_LENGTH = 12 * 1024 * 1024
    ALLOWED_IMAGE_MIMETYPES = ("image/png", "image/jpeg", "image/webp", "image/gif")

    SIGNUP_CREDIT_BONUS = int(os.getenv("SIGNUP_CREDIT_BONUS", "0"))
    CREDIT_YUAN_PER_UNIT = float(os.getenv("CREDIT_YUAN_PER_UNIT", "0.8"))

    @classmethod
    def init_app(cls, app):
        cloudinary.config(cloud_name=cls.CLOUD_NAME, api_key=cls.CLOUD_API_KEY, api_secret=cls.CLOUD_SECRET)


class DevelopmentConfig(Config):
    DEBUG = True
    SESSION_COOKIE_SECURE = False

    @classmethod
    def init_app(cls, app):
        super().init_app(app)  # Call the parent init_app
        app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv(
            "DATABASE_URL", f"sqlite:///{os.path.join(basedir, 'chatcanvas-dev.db')}"
        )


class ProductionConfig(Config):
    DEBUG = False
    SESSION_COOKIE_SECURE = True

    @classmethod
    def init_app(cls, app):
        super().init_app(app)  # Call the parent init_app
        app.config["SQLALCHEMY_DATABASE_URI"] = (
            f"mysql+pymysql://{cls.SQL_USERNAME}:{cls.SQL_PASSWORD}@{cls.SQL_HOSTNAME}:3306/{cls.SQL_DB_NAME}"
        )


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "testing"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    OPENAI_API_KEY = "sk-test"
    REPLICATE_API_TOKEN = "r8-test"
    REPLICATE_POLL_INTERVAL = 0
    REPLICATE_POLL_ATTEMPTS = 3

    @classmethod
    def init_app(cls, app):
        app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite://"
