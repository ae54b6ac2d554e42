from chatcanvas import db
from chatcanvas.models.mixins import TimestampMixin, UpdateTimestampMixin, generate_uuid

TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TERMINAL_TASK_STATES = (TASK_COMPLETED, TASK_FAILED)


class ImageTask(db.Model, UpdateTimestampMixin):
    __tablename__ = "image_tasks"

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    conversation_id = db.Column(
        db.String(36), db.ForeignKey("conversations.id", ondelete="SET NULL"), index=True, nullable=True
    )
    original_image_url = db.Column(db.String(512), nullable=True)  # None means text-to-image
    prompt = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TASK_PROCESSING)
    processed_image_url = db.Column(db.String(512), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    prediction_id = db.Column(db.String(100), nullable=True)

    user = db.relationship("User", back_populates="image_tasks")
    conversation = db.relationship("Conversation", back_populates="image_tasks")

    @property
    def is_terminal(self):
        return self.status in TERMINAL_TASK_STATES

    def complete(self, processed_image_url, prediction_id=None):
        self._ensure_processing()
        self.status = TASK_COMPLETED
        self.processed_image_url = processed_image_url
        self.prediction_id = prediction_id

    def fail(self, error_message, prediction_id=None):
        self._ensure_processing()
        self.status = TASK_FAILED
        self.error_message = error_message or "Image processing failed"
        if prediction_id:
            self.prediction_id = prediction_id

    def _ensure_processing(self):
        if self.is_terminal:
            raise ValueError(f"Image task {self.id} is already {self.status}")

    def to_dict(self):
        data = {
            "task_id": self.id,
            "status": self.status,
            "prompt": self.prompt,
            "conversation_id": self.conversation_id,
            "original_image_url": self.original_image_url,
            "prediction_id": self.prediction_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.status == TASK_COMPLETED:
            data["processed_image_url"] = self.processed_image_url
        if self.status == TASK_FAILED:
            data["error"] = self.error_message
        return data

    def __repr__(self):
        return f"<ImageTask {self.id} {self.status} - {self.prompt[:30]}>"


class FavoriteImage(db.Model, TimestampMixin):
    __tablename__ = "favorite_images"
    __table_args__ = (db.UniqueConstraint("user_id", "image_url", name="uq_favorite_images_user_image"),)

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    conversation_id = db.Column(
        db.String(36), db.ForeignKey("conversations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    message_id = db.Column(db.String(36), db.ForeignKey("messages.id", ondelete="CASCADE"), index=True, nullable=False)
    image_url = db.Column(db.String(512), nullable=False)

    user = db.relationship("User", back_populates="favorite_images")
    conversation = db.relationship("Conversation", back_populates="favorites")
    message = db.relationship("Message", back_populates="favorites")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "image_url": self.image_url,
            "created_at": self.created_at.isoformat(),
        }
