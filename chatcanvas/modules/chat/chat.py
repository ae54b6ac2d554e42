from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from chatcanvas import db
from chatcanvas.models.chat_models import Conversation
from chatcanvas.modules.chat.chat_util import (
    dispatch_turn,
    get_conversation_messages,
    get_user_conversation,
    next_conversation_title,
    save_message,
    set_thumbnail_once,
)
from chatcanvas.utils.error_util import ValidationError, commit_session
from chatcanvas.utils.forms_util import (
    AgentTurnForm,
    MessageForm,
    NewConversationForm,
    RenameConversationForm,
    ThumbnailForm,
    validate_form,
)
from chatcanvas.utils.logging_util import configure_logging
from chatcanvas.utils.storage_util import CloudinaryStorage, read_image_upload

logger = configure_logging()

chat_bp = Blueprint("chat_bp", __name__, url_prefix="/chat")


def get_image_storage():
    storage = current_app.extensions.get("image_storage")
    if storage is None:
        storage = CloudinaryStorage(current_app.config.get("CLOUD_UPLOAD_FOLDER", "chatcanvas"))
        current_app.extensions["image_storage"] = storage
    return storage


@chat_bp.route("/conversations", methods=["GET"])
@login_required
def list_conversations():
    conversations = (
        Conversation.query.filter_by(user_id=current_user.id).order_by(Conversation.updated_at.desc()).all()
    )
    return jsonify({"status": "success", "conversations": [c.to_dict() for c in conversations]})


@chat_bp.route("/conversations", methods=["POST"])
@login_required
def new_conversation():
    form = validate_form(NewConversationForm())
    conversation = Conversation(
        user_id=current_user.id, title=form.title.data or next_conversation_title(current_user.id)
    )
    db.session.add(conversation)
    commit_session(db.session, "create conversation")
    logger.info(f"Created conversation {conversation.id} for user {current_user.id}")
    return jsonify({"status": "success", "conversation": conversation.to_dict()}), 201


@chat_bp.route("/conversations/<string:conversation_id>", methods=["DELETE"])
@login_required
def delete_conversation(conversation_id):
    conversation = get_user_conversation(current_user.id, conversation_id)
    db.session.delete(conversation)
    commit_session(db.session, "delete conversation")
    logger.info(f"Deleted conversation {conversation_id}")
    return jsonify({"status": "success", "conversation_id": conversation_id})


@chat_bp.route("/conversations/<string:conversation_id>", methods=["PATCH"])
@login_required
def rename_conversation(conversation_id):
    conversation = get_user_conversation(current_user.id, conversation_id)
    form = validate_form(RenameConversationForm())
    conversation.title = form.title.data.strip()
    conversation.touch()
    commit_session(db.session, "rename conversation")
    return jsonify({"status": "success", "conversation": conversation.to_dict()})


@chat_bp.route("/conversations/<string:conversation_id>/thumbnail", methods=["POST"])
@login_required
def update_thumbnail(conversation_id):
    conversation = get_user_conversation(current_user.id, conversation_id)
    form = validate_form(ThumbnailForm())
    updated = set_thumbnail_once(conversation, form.thumbnail_url.data)
    return jsonify({"status": "success", "updated": updated, "conversation": conversation.to_dict()})


@chat_bp.route("/conversations/<string:conversation_id>/messages", methods=["GET"])
@login_required
def list_messages(conversation_id):
    conversation = get_user_conversation(current_user.id, conversation_id)
    messages = get_conversation_messages(conversation.id)
    return jsonify({"status": "success", "messages": [message.to_dict() for message in messages]})


@chat_bp.route("/conversations/<string:conversation_id>/messages", methods=["POST"])
@login_required
def create_message(conversation_id):
    conversation = get_user_conversation(current_user.id, conversation_id)
    form = validate_form(MessageForm())
    payload = request.get_json(silent=True) or {}
    additional_image_urls = payload.get("additional_image_urls") or []
    if not isinstance(additional_image_urls, list):
        raise ValidationError("additional_image_urls must be a list")

    message = save_message(
        conversation,
        form.content.data,
        role=form.role.data or "user",
        image_url=form.image_url.data or None,
        additional_image_urls=additional_image_urls,
    )
    return jsonify({"status": "success", "message": message.to_dict()}), 201


@chat_bp.route("/agent", methods=["POST"])
@login_required
def agent_turn():
    form = validate_form(AgentTurnForm())
    result = dispatch_turn(
        current_user,
        form.conversation_id.data,
        form.message.data,
        uploaded_image_url=form.image_url.data or None,
    )
    return jsonify(
        {
            "status": "success",
            "message": result.message.to_dict(),
            "requires_image_processing": result.generation_attempted,
            "task": result.task.to_dict() if result.task else None,
        }
    )


@chat_bp.route("/upload-image", methods=["POST"])
@login_required
def upload_image():
    file = request.files.get("file") or request.files.get("image")
    data = read_image_upload(
        file,
        current_app.config.get("ALLOWED_IMAGE_MIMETYPES"),
        current_app.config.get("MAX_UPLOAD_SIZE", 10 * 1024 * 1024),
    )
    url = get_image_storage().store(data, file.filename, current_user.id)
    return jsonify({"status": "success", "image_url": url}), 201
