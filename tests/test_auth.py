from chatcanvas import db
from chatcanvas.models.user_models import User
from chatcanvas.modules.auth.auth_util import hash_api_token


def test_token_is_stored_hashed(user):
    stored = db.session.get(User, user.id)
    assert stored.api_token_hash == hash_api_token(user.token)
    assert user.token not in stored.api_token_hash


def test_me_returns_user_and_credits(client, user):
    response = client.get("/auth/me", headers=user.headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body["user"]["username"] == "alice"
    assert body["credits"]["current_balance"] == 0


def test_unknown_token_rejected(client, user):
    response = client.get("/auth/me", headers={"Authorization": "Bearer cc-nope"})
    assert response.status_code == 401
    response = client.get("/auth/me", headers={"Authorization": f"Token {user.token}"})
    assert response.status_code == 401


def test_rotated_token_replaces_old_one(client, user):
    response = client.post("/auth/rotate-token", headers=user.headers)
    new_token = response.get_json()["api_token"]

    assert new_token != user.token
    assert client.get("/auth/me", headers=user.headers).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200


def test_each_request_resolves_its_own_user(client, user, other_user):
    assert client.get("/auth/me", headers=user.headers).get_json()["user"]["username"] == "alice"
    assert client.get("/auth/me", headers=other_user.headers).get_json()["user"]["username"] == "bob"
    assert client.get("/auth/me", headers=user.headers).get_json()["user"]["username"] == "alice"
