from chatcanvas import db
from chatcanvas.models.mixins import TimestampMixin, UpdateTimestampMixin, generate_uuid, utcnow

MESSAGE_ROLES = ("user", "assistant")


class Conversation(db.Model, UpdateTimestampMixin):
    __tablename__ = "conversations"
    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    title = db.Column(db.String(255), nullable=False, default="New Conversation")
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    thumbnail_url = db.Column(db.String(512), nullable=True)  # first image ever attached, set once
    messages = db.relationship(
        "Message",
        backref="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )
    favorites = db.relationship(
        "FavoriteImage", back_populates="conversation", cascade="all, delete-orphan"
    )
    image_tasks = db.relationship("ImageTask", back_populates="conversation")

    def touch(self):
        self.updated_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "user_id": self.user_id,
            "thumbnail_url": self.thumbnail_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Message(db.Model, TimestampMixin):
    __tablename__ = "messages"
    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    conversation_id = db.Column(
        db.String(36), db.ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    role = db.Column(db.Enum(*MESSAGE_ROLES, name="message_role"), nullable=False)
    content = db.Column(db.Text, nullable=False, default="")
    image_url = db.Column(db.String(512), nullable=True)
    additional_image_urls = db.Column(db.JSON, nullable=False, default=list)
    favorites = db.relationship(
        "FavoriteImage", back_populates="message", cascade="all, delete-orphan"
    )

    @property
    def image_urls(self):
        urls = [self.image_url] if self.image_url else []
        return urls + list(self.additional_image_urls or [])

    def to_dict(self):
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "image_url": self.image_url,
            "additional_image_urls": list(self.additional_image_urls or []),
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self):
        return f"<Message {self.id} {self.role}>"
