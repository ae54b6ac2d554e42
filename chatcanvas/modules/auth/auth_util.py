import hashlib
import secrets

from flask import current_app
from openai import OpenAI

from chatcanvas import db, login_manager
from chatcanvas.models.user_models import User
from chatcanvas.utils.error_util import commit_session
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()


def hash_api_token(api_token):
    return hashlib.sha256(api_token.encode("utf-8")).hexdigest()


def generate_api_token():
    return f"cc-{secrets.token_urlsafe(32)}"


def create_user(username, email, is_admin=False):
    """Create a user with a fresh bearer token; the plain token is only returned here."""
    from chatcanvas.modules.credit.credit_util import ensure_credit_account

    api_token = generate_api_token()
    user = User(username=username, email=email, api_token_hash=hash_api_token(api_token), is_admin=is_admin)
    db.session.add(user)
    commit_session(db.session, "create user")
    ensure_credit_account(user.id)
    logger.info(f"Created user {user.id} ({username})")
    return user, api_token


def rotate_api_token(user):
    api_token = generate_api_token()
    user.api_token_hash = hash_api_token(api_token)
    commit_session(db.session, "rotate API token")
    return api_token


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, user_id)


@login_manager.request_loader
def load_user_from_request(request):
    auth_header = request.headers.get("Authorization", "")
    scheme, _, api_token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not api_token.strip():
        return None
    return User.query.filter_by(api_token_hash=hash_api_token(api_token.strip())).first()


def get_openai_client():
    """Chat completion client; tests and alternate deployments register one in ``app.extensions``."""
    client = current_app.extensions.get("openai_client")
    if client is None:
        api_key = current_app.config.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OpenAI API key not configured")
        client = OpenAI(api_key=api_key, max_retries=3, timeout=30.0)
        current_app.extensions["openai_client"] = client
    return client
