from sqlalchemy.exc import IntegrityError

from chatcanvas import db
from chatcanvas.models.chat_models import Message
from chatcanvas.models.image_models import FavoriteImage
from chatcanvas.modules.chat.chat_util import get_user_conversation
from chatcanvas.utils.error_util import NotFoundError, ValidationError, commit_session
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()


def get_favorite(user_id, image_url):
    return FavoriteImage.query.filter_by(user_id=user_id, image_url=image_url).first()


def add_favorite(user_id, conversation_id, message_id, image_url):
    """Favorite an image of one of the user's messages; returns ``(favorite, created)``."""
    conversation = get_user_conversation(user_id, conversation_id)
    message = db.session.get(Message, message_id)
    if not message or message.conversation_id != conversation.id:
        raise NotFoundError("Message not found")
    if image_url not in message.image_urls:
        raise ValidationError("Image does not belong to this message")

    existing = get_favorite(user_id, image_url)
    if existing:
        return existing, False

    favorite = FavoriteImage(
        user_id=user_id, conversation_id=conversation.id, message_id=message.id, image_url=image_url
    )
    db.session.add(favorite)
    try:
        db.session.commit()
    except IntegrityError:
        # favorited concurrently
        db.session.rollback()
        return get_favorite(user_id, image_url), False
    logger.info(f"User {user_id} favorited {image_url}")
    return favorite, True


def remove_favorite(user_id, image_url):
    favorite = get_favorite(user_id, image_url)
    if not favorite:
        return False
    db.session.delete(favorite)
    commit_session(db.session, "remove favorite")
    return True


def list_favorites(user_id, conversation_id=None):
    query = FavoriteImage.query.filter_by(user_id=user_id)
    if conversation_id:
        query = query.filter_by(conversation_id=conversation_id)
    return query.order_by(FavoriteImage.created_at.desc()).all()
