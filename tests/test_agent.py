import pytest
import requests
from conftest import CDN_IMAGE, OUTPUT_IMAGE, fund, make_conversation, make_tool_call

from chatcanvas import db
from chatcanvas.models.chat_models import Message
from chatcanvas.models.image_models import ImageTask
from chatcanvas.models.user_models import User
from chatcanvas.modules.chat.chat_util import MODEL_FAILURE_REPLY, dispatch_turn, resolve_source_image
from chatcanvas.modules.credit.credit_util import get_balance
from chatcanvas.utils.error_util import ImageReferenceError, NotFoundError, ValidationError


def add_message(conversation_id, role, content, image_url=None):
    message = Message(conversation_id=conversation_id, role=role, content=content, image_url=image_url)
    db.session.add(message)
    db.session.commit()
    return message.id


def assistant_messages(conversation_id):
    return Message.query.filter_by(conversation_id=conversation_id, role="assistant").all()


def run_turn(user_id, conversation_id, text, uploaded_image_url=None):
    return dispatch_turn(db.session.get(User, user_id), conversation_id, text, uploaded_image_url)


def test_resolve_source_image_prefers_upload_then_newest_history():
    history = [
        {"role": "user", "content": "first", "image_url": "https://res.cloudinary.com/demo/one.jpg"},
        {"role": "assistant", "content": "done", "image_url": "https://replicate.delivery/two.jpg"},
        {"role": "user", "content": "again", "image_url": None},
    ]
    assert resolve_source_image(history, "https://elsewhere.test/x.jpg") == "https://replicate.delivery/two.jpg"
    assert resolve_source_image(history, None, CDN_IMAGE) == CDN_IMAGE
    assert resolve_source_image([], "https://elsewhere.test/x.jpg") is None


def test_resolve_source_image_rejects_malformed_history_reference():
    history = [{"role": "user", "content": "edit", "image_url": "not-a-url"}]
    with pytest.raises(ImageReferenceError):
        resolve_source_image(history, CDN_IMAGE)


def test_text_to_image_turn(user, openai_client, provider):
    fund(user.id, 1)
    conversation_id = make_conversation(user.id)
    add_message(conversation_id, "user", "generate a cat astronaut")
    openai_client.queue(
        "Sure, I'm working on your image.",
        [make_tool_call({"prompt": "a cat astronaut", "conversation_id": conversation_id})],
    )

    result = run_turn(user.id, conversation_id, "generate a cat astronaut")

    assert result.generation_attempted
    assert result.task.completed
    assert result.message.image_url == OUTPUT_IMAGE
    assert "failed" not in result.message.content.lower()
    assert provider.calls == [("a cat astronaut", None)]
    assert len(assistant_messages(conversation_id)) == 1
    assert get_balance(user.id) == 0


def test_tool_schema_and_history_sent_to_model(user, openai_client):
    conversation_id = make_conversation(user.id)
    add_message(conversation_id, "user", "hi there")

    run_turn(user.id, conversation_id, "hi there")

    request = openai_client.requests[0]
    assert request["tool_choice"] == "auto"
    assert request["tools"][0]["function"]["name"] == "image_processing"
    user_turns = [m for m in request["messages"] if m["role"] == "user"]
    assert [m["content"] for m in user_turns] == ["hi there"]
    assert request["messages"][0]["role"] == "system"


def test_turn_not_yet_persisted_is_appended(user, openai_client):
    conversation_id = make_conversation(user.id)

    run_turn(user.id, conversation_id, "hello", uploaded_image_url=CDN_IMAGE)

    last = openai_client.requests[0]["messages"][-1]
    assert last["role"] == "user"
    assert last["content"].startswith("hello")
    assert CDN_IMAGE in last["content"]


def test_model_proposed_url_ignored_for_history_image(user, openai_client, provider):
    fund(user.id, 1)
    conversation_id = make_conversation(user.id)
    add_message(conversation_id, "user", "here is my photo", image_url=CDN_IMAGE)
    add_message(conversation_id, "user", "make the sky purple")
    openai_client.queue(
        None,
        [
            make_tool_call(
                {"prompt": "make the sky purple", "conversation_id": conversation_id, "image_url": "cat.jpg (uploaded)"}
            )
        ],
    )

    result = run_turn(user.id, conversation_id, "make the sky purple")

    assert provider.calls == [("make the sky purple", CDN_IMAGE)]
    assert result.message.image_url == OUTPUT_IMAGE


def test_invalid_history_reference_fails_gracefully(user, openai_client, provider):
    fund(user.id, 1)
    conversation_id = make_conversation(user.id)
    add_message(conversation_id, "user", "edit this", image_url="ftp://files.example.com/cat.jpg")
    openai_client.queue(None, [make_tool_call({"prompt": "remove background", "conversation_id": conversation_id})])

    result = run_turn(user.id, conversation_id, "remove background")

    assert provider.calls == []
    assert result.task is None
    assert "invalid" in result.message.content.lower()
    assert result.message.image_url is None
    assert ImageTask.query.count() == 0
    assert get_balance(user.id) == 1
    assert len(assistant_messages(conversation_id)) == 1


def test_network_error_produces_failure_reply(user, openai_client, provider):
    fund(user.id, 1)
    conversation_id = make_conversation(user.id)
    provider.error = requests.ConnectionError("connection reset by peer")
    openai_client.queue(None, [make_tool_call({"prompt": "a cat astronaut", "conversation_id": conversation_id})])

    result = run_turn(user.id, conversation_id, "generate a cat astronaut")

    assert result.task.status == "failed"
    assert "Image processing failed" in result.message.content
    assert "connection reset" in result.message.content
    assert result.message.image_url is None
    assert get_balance(user.id) == 1
    assert len(assistant_messages(conversation_id)) == 1


def test_only_first_tool_call_is_executed(user, openai_client, provider):
    fund(user.id, 5)
    conversation_id = make_conversation(user.id)
    openai_client.queue(
        None,
        [
            make_tool_call({"prompt": "a red car", "conversation_id": conversation_id}, call_id="call_1"),
            make_tool_call({"prompt": "a blue car", "conversation_id": conversation_id}, call_id="call_2"),
        ],
    )

    run_turn(user.id, conversation_id, "draw a red car and a blue car")

    assert provider.calls == [("a red car", None)]
    assert get_balance(user.id) == 4


def test_insufficient_credit_reply(user, openai_client, provider):
    conversation_id = make_conversation(user.id)
    openai_client.queue(None, [make_tool_call({"prompt": "a cat", "conversation_id": conversation_id})])

    result = run_turn(user.id, conversation_id, "draw a cat")

    assert provider.calls == []
    assert "credits" in result.message.content
    assert result.generation_attempted


def test_unreadable_tool_arguments(user, openai_client, provider):
    conversation_id = make_conversation(user.id)
    openai_client.queue(None, [make_tool_call("{not json")])

    result = run_turn(user.id, conversation_id, "draw a cat")

    assert provider.calls == []
    assert "Image processing failed" in result.message.content


def test_model_failure_still_replies(user, openai_client, provider):
    conversation_id = make_conversation(user.id)
    openai_client.error = RuntimeError("upstream unavailable")

    result = run_turn(user.id, conversation_id, "draw a cat")

    assert not result.generation_attempted
    assert result.message.content == MODEL_FAILURE_REPLY
    assert "upstream unavailable" not in result.message.content
    assert provider.calls == []
    assert len(assistant_messages(conversation_id)) == 1


def test_plain_chat_turn(user, openai_client, provider):
    conversation_id = make_conversation(user.id)
    openai_client.queue("What would you like me to draw? A landscape, a portrait, or something else?")

    result = run_turn(user.id, conversation_id, "make an image")

    assert not result.generation_attempted
    assert result.task is None
    assert result.message.content.startswith("What would you like")


def test_turn_validation(user, other_user):
    conversation_id = make_conversation(other_user.id)
    with pytest.raises(ValidationError):
        run_turn(user.id, conversation_id, "x" * 1001)
    with pytest.raises(NotFoundError):
        run_turn(user.id, "missing", "hello")


def test_agent_endpoint(client, user, openai_client):
    fund(user.id, 1)
    conversation_id = make_conversation(user.id)
    openai_client.queue("On it.", [make_tool_call({"prompt": "a cat astronaut", "conversation_id": conversation_id})])

    response = client.post(
        "/chat/agent",
        json={"conversation_id": conversation_id, "message": "generate a cat astronaut"},
        headers=user.headers,
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["requires_image_processing"] is True
    assert body["task"]["status"] == "completed"
    assert body["message"]["image_url"] == OUTPUT_IMAGE
    assert body["message"]["role"] == "assistant"


def test_agent_endpoint_requires_fields(client, user):
    response = client.post("/chat/agent", json={"message": "hi"}, headers=user.headers)
    assert response.status_code == 400
    assert response.get_json()["message"] == "Missing required fields"
