import uuid
from datetime import datetime, timezone

from chatcanvas import db


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    # naive UTC with microseconds; message order depends on it
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at = db.Column(db.DateTime(timezone=False), default=utcnow, nullable=False, index=True)


class UpdateTimestampMixin(TimestampMixin):
    updated_at = db.Column(db.DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)
