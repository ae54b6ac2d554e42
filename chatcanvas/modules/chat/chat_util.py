import json
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import update

from chatcanvas import db
from chatcanvas.models.chat_models import Conversation, Message
from chatcanvas.modules.auth.auth_util import get_openai_client
from chatcanvas.modules.image.image_util import TaskResult, parse_image_url, process_image_request
from chatcanvas.utils.error_util import (
    AuthorizationError,
    ChatCanvasError,
    ImageReferenceError,
    InsufficientCreditError,
    NotFoundError,
    ValidationError,
    commit_session,
)
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

IMAGE_TOOL_NAME = "image_processing"
MODEL_FAILURE_REPLY = "Sorry, I couldn't process your request right now. Please try again in a moment."

SYSTEM_PROMPT = """You are an efficient, professional AI assistant for editing and generating images. \
Your main job is to call the `image_processing` tool to edit an image or create a new one from the user's instructions.

Workflow:
1. Analyze the user's latest message and decide whether it is
   - a clear image editing instruction (change the background, remove an object, add an element, ...), or
   - a clear image generation instruction (draw a cat, create a space background, ...).
2. If the instruction is clear enough, call `image_processing` right away. Translate the request into a precise \
English `prompt` for the tool. Do not ask for confirmation or offer options.
3. If the instruction is vague ("make an image", "process this picture") or you cannot tell the action and the \
subject, ask the user a clarifying question and suggest a few options.
4. If the message has nothing to do with images, just chat normally.

Tool rules:
- Tool name: `image_processing`
- `prompt`: the edit or generation instruction in English (e.g. "change background to a beach at sunset", \
"remove the chair", "a cat sitting on a sofa, cartoon style").
- `conversation_id`: the current conversation ID.
- When the conversation contains an image (uploaded or generated earlier) the tool edits the most recent one; \
otherwise it generates a new image from the prompt.

Always reply in the user's language. After calling the tool keep the reply short, for example \
"Sure, I'm working on your image."
"""

IMAGE_TOOL = {
    "type": "function",
    "function": {
        "name": IMAGE_TOOL_NAME,
        "description": "Edit the most recent image in the conversation, or generate a new image when there is none",
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": 'English edit or generation instruction, e.g. "remove background", '
                    '"change to sunset", "add a dog"',
                },
                "conversation_id": {"type": "string", "description": "Current conversation ID"},
                "image_url": {"type": "string", "description": "Image the instruction refers to, if any"},
            },
            "required": ["prompt", "conversation_id"],
        },
    },
}


@dataclass
class TurnResult:
    message: Message
    generation_attempted: bool
    task: Optional[TaskResult] = None


def get_user_conversation(user_id, conversation_id):
    conversation = db.session.get(Conversation, conversation_id) if conversation_id else None
    if not conversation:
        raise NotFoundError("Conversation not found")
    if conversation.user_id != user_id:
        raise AuthorizationError("Unauthorized")
    return conversation


def get_conversation_messages(conversation_id):
    return Message.query.filter_by(conversation_id=conversation_id).order_by(Message.created_at.asc()).all()


def load_history(conversation_id):
    return [
        {"role": message.role, "content": message.content, "image_url": message.image_url}
        for message in get_conversation_messages(conversation_id)
    ]


def describe_message(content, image_url=None):
    if image_url:
        return f"{content}\n\n[Attached image: {image_url}]".strip()
    return content


def build_model_messages(history, user_text, uploaded_image_url=None):
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend(
        {"role": entry["role"], "content": describe_message(entry["content"], entry.get("image_url"))}
        for entry in history
    )

    # the client usually persists the user's message before asking for a reply
    last = history[-1] if history else None
    if not (last and last["role"] == "user" and last["content"] == user_text):
        messages.append({"role": "user", "content": describe_message(user_text, uploaded_image_url)})
    return messages


def resolve_source_image(history, proposed_url=None, uploaded_url=None):
    """Pick the image a generation should edit.

    The URL proposed by the model is never trusted. A freshly uploaded image
    wins; otherwise the newest message carrying an image is used. ``None``
    means text-to-image. A malformed reference raises ``ImageReferenceError``.
    """
    candidate = uploaded_url or None
    if candidate is None:
        for entry in reversed(history):
            if entry.get("image_url"):
                candidate = entry["image_url"]
                break

    if proposed_url and proposed_url != candidate:
        logger.info(f"Ignoring model-proposed image URL {proposed_url!r}; using {candidate!r}")
    if candidate is None:
        return None
    return parse_image_url(candidate, error_cls=ImageReferenceError)


def request_completion(client, messages):
    return client.chat.completions.create(
        model=current_app.config["OPENAI_CHAT_MODEL"],
        messages=messages,
        tools=[IMAGE_TOOL],
        tool_choice="auto",
        temperature=current_app.config.get("OPENAI_TEMPERATURE", 0.7),
    )


def parse_tool_arguments(tool_call):
    try:
        arguments = json.loads(tool_call.function.arguments or "{}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"Could not read the image request: {e}") from e
    if not isinstance(arguments, dict):
        raise ValidationError("Could not read the image request.")
    return arguments


def run_image_tool(user_id, conversation_id, history, arguments, user_text, uploaded_image_url=None):
    """Execute one image_processing call; returns (reply suffix, TaskResult or None)."""
    prompt = arguments.get("prompt") or user_text
    try:
        source_image_url = resolve_source_image(history, arguments.get("image_url"), uploaded_image_url)
    except ImageReferenceError as e:
        logger.error(f"Aborting image tool call in conversation {conversation_id}: {e.message}")
        return "Sorry, the image URL is invalid. Please upload the image again and retry.", None

    try:
        task = process_image_request(user_id, prompt, source_image_url, conversation_id)
    except InsufficientCreditError as e:
        return (
            f"Image processing failed: you don't have enough credits (current balance: {e.balance}). "
            "Please top up to continue.",
            None,
        )
    except ChatCanvasError as e:
        logger.error(f"Image request rejected in conversation {conversation_id}: {e.message}")
        return f"Image processing failed: {e.message}", None

    if task.completed:
        return ("Image editing complete!" if source_image_url else "Image generation complete!"), task
    return f"Image processing failed: {task.error or 'unknown error'}", task


def dispatch_turn(user, conversation_id, user_text, uploaded_image_url=None):
    """Answer one user turn, running the image tool when the model asks for it.

    Always persists exactly one assistant message. Only the first tool call
    of a model response is executed.
    """
    max_length = current_app.config.get("MAX_MESSAGE_LENGTH", 1000)
    if not user_text or not user_text.strip():
        raise ValidationError("Missing required fields")
    if len(user_text) > max_length:
        raise ValidationError(f"Message too long (max {max_length} characters)")

    conversation = get_user_conversation(user.id, conversation_id)
    history = load_history(conversation.id)
    reply_parts = []
    generation_attempted = False
    task = None

    try:
        completion = request_completion(get_openai_client(), build_model_messages(history, user_text, uploaded_image_url))
        assistant_message = completion.choices[0].message
    except Exception as e:
        logger.error(f"Chat completion failed for conversation {conversation.id}: {e}")
        assistant_message = None
        reply_parts.append(MODEL_FAILURE_REPLY)

    if assistant_message is not None:
        if assistant_message.content:
            reply_parts.append(assistant_message.content.strip())

        tool_calls = list(assistant_message.tool_calls or [])
        if len(tool_calls) > 1:
            logger.info(f"Model requested {len(tool_calls)} tool calls; only the first one is executed")
        tool_call = tool_calls[0] if tool_calls else None

        if tool_call is not None and tool_call.function.name == IMAGE_TOOL_NAME:
            generation_attempted = True
            logger.info(f"Image tool called in conversation {conversation.id}: {tool_call.function.arguments}")
            try:
                arguments = parse_tool_arguments(tool_call)
            except ValidationError as e:
                reply_parts.append(f"Image processing failed: {e.message}")
            else:
                suffix, task = run_image_tool(
                    user.id, conversation.id, history, arguments, user_text, uploaded_image_url
                )
                reply_parts.append(suffix)
        elif tool_call is not None:
            logger.error(f"Ignoring call to unknown tool {tool_call.function.name}")

    content = "\n\n".join(part for part in reply_parts if part) or "Sorry, I don't have a reply for that."
    message = Message(
        conversation_id=conversation.id,
        role="assistant",
        content=content,
        image_url=task.output_image_url if task and task.completed else None,
        additional_image_urls=[],
    )
    db.session.add(message)
    conversation.touch()
    commit_session(db.session, "save assistant reply")
    return TurnResult(message=message, generation_attempted=generation_attempted, task=task)


def save_message(conversation, content, role="user", image_url=None, additional_image_urls=None):
    content = (content or "").strip()
    image_url = parse_image_url(image_url) if image_url else None
    additional_image_urls = [parse_image_url(url) for url in (additional_image_urls or [])]
    if not content and not image_url and not additional_image_urls:
        raise ValidationError("Message must have text or an image.")

    message = Message(
        conversation_id=conversation.id,
        role=role,
        content=content,
        image_url=image_url,
        additional_image_urls=additional_image_urls,
    )
    db.session.add(message)
    conversation.touch()
    commit_session(db.session, "save message")
    return message


def set_thumbnail_once(conversation, thumbnail_url):
    """Store the conversation thumbnail unless one is already set."""
    thumbnail_url = parse_image_url(thumbnail_url)
    result = db.session.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id, Conversation.thumbnail_url.is_(None))
        .values(thumbnail_url=thumbnail_url)
        .execution_options(synchronize_session=False)
    )
    commit_session(db.session, "set conversation thumbnail")
    db.session.refresh(conversation)
    return result.rowcount == 1


def next_conversation_title(user_id):
    existing = Conversation.query.filter(
        Conversation.user_id == user_id, Conversation.title.like("New Conversation #%")
    ).all()
    numbers = [int(c.title.split("#")[-1]) for c in existing if c.title.split("#")[-1].isdigit()]
    return f"New Conversation #{max(numbers) + 1 if numbers else 1}"
