import json
from types import SimpleNamespace

import pytest
from flask import g
from flask.testing import FlaskClient

from chatcanvas import create_app, db
from chatcanvas.models.chat_models import Conversation
from chatcanvas.modules.auth.auth_util import create_user
from chatcanvas.modules.credit.credit_util import TOPUP_TRANSACTION, adjust_balance
from chatcanvas.utils.replicate_util import PredictionResult
from config import TestingConfig

CDN_IMAGE = "https://res.cloudinary.com/demo/image/upload/cat.jpg"
OUTPUT_IMAGE = "https://replicate.delivery/pbxt/output.jpg"


class FakeProvider:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or PredictionResult("pred-1", OUTPUT_IMAGE, None, "succeeded")
        self.error = error

    def generate(self, prompt, image_url=None):
        self.calls.append((prompt, image_url))
        if self.error is not None:
            raise self.error
        return self.result


def make_tool_call(arguments, name="image_processing", call_id="call_1"):
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    return SimpleNamespace(id=call_id, type="function", function=SimpleNamespace(name=name, arguments=arguments))


def make_completion(content=None, tool_calls=None):
    message = SimpleNamespace(role="assistant", content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(index=0, message=message)])


class FakeOpenAIClient:
    """Stands in for ``openai.OpenAI``; replies are queued per test."""

    def __init__(self):
        self.responses = []
        self.requests = []
        self.error = None
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    def queue(self, content=None, tool_calls=None):
        self.responses.append(make_completion(content, tool_calls))

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return make_completion("Hello! How can I help with your images?")


class FakeStorage:
    def __init__(self):
        self.stored = []

    def store(self, data, filename, user_id):
        self.stored.append((filename, len(data), user_id))
        return f"https://res.cloudinary.com/demo/image/upload/{user_id}/{len(self.stored)}-{filename}"


class LoginResetClient(FlaskClient):
    """Test client for an app context that stays pushed across requests.

    Flask-Login caches the loaded user on ``g``; the shared context would
    hand that detached instance to every later request.
    """

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        try:
            return super().open(*args, **kwargs)
        finally:
            g.pop("_login_user", None)


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    app.test_client_class = LoginResetClient
    app.extensions["openai_client"] = FakeOpenAIClient()
    app.extensions["image_provider"] = FakeProvider()
    app.extensions["image_storage"] = FakeStorage()
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def openai_client(app):
    return app.extensions["openai_client"]


@pytest.fixture
def provider(app):
    return app.extensions["image_provider"]


@pytest.fixture
def storage(app):
    return app.extensions["image_storage"]


def make_user(username, is_admin=False):
    user, token = create_user(username, f"{username}@example.com", is_admin=is_admin)
    return SimpleNamespace(id=user.id, token=token, headers={"Authorization": f"Bearer {token}"})


@pytest.fixture
def user(app):
    return make_user("alice")


@pytest.fixture
def other_user(app):
    return make_user("bob")


@pytest.fixture
def admin(app):
    return make_user("root", is_admin=True)


def fund(user_id, credits):
    assert adjust_balance(user_id, credits, TOPUP_TRANSACTION, description="test funds")


def make_conversation(user_id, title="Test conversation"):
    conversation = Conversation(user_id=user_id, title=title)
    db.session.add(conversation)
    db.session.commit()
    return conversation.id
