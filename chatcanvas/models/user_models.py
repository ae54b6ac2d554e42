from flask_login import UserMixin
from sqlalchemy import CheckConstraint

from chatcanvas import db
from chatcanvas.models.mixins import TimestampMixin, UpdateTimestampMixin, generate_uuid


class User(UserMixin, db.Model, TimestampMixin):
    __tablename__ = "users"
    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(100), unique=True, nullable=False, index=True)
    api_token_hash = db.Column(db.String(64), unique=True, nullable=True, index=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)

    conversations = db.relationship(
        "Conversation", backref="user", lazy="dynamic", cascade="all, delete-orphan"
    )
    credit = db.relationship("UserCredit", backref="user", uselist=False, cascade="all, delete-orphan")
    credit_transactions = db.relationship(
        "CreditTransaction",
        primaryjoin="User.id==CreditTransaction.user_id",
        backref="user",
        lazy="dynamic",
    )
    image_tasks = db.relationship("ImageTask", back_populates="user", lazy="dynamic")
    favorite_images = db.relationship("FavoriteImage", back_populates="user", lazy="dynamic")

    def __repr__(self):
        return f"<User {self.username}>"


class UserCredit(db.Model, UpdateTimestampMixin):
    __tablename__ = "user_credits"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_user_credits_balance_non_negative"),
        CheckConstraint("reserved >= 0 AND reserved <= current_balance", name="ck_user_credits_reserved_bounds"),
    )

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    current_balance = db.Column(db.Integer, default=0, nullable=False)
    reserved = db.Column(db.Integer, default=0, nullable=False)  # units held by in-flight generations
    total_earned = db.Column(db.Integer, default=0, nullable=False)
    total_spent = db.Column(db.Integer, default=0, nullable=False)

    @property
    def available(self):
        return self.current_balance - self.reserved

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "current_balance": self.current_balance,
            "reserved": self.reserved,
            "available": self.available,
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
        }


class CreditTransaction(db.Model, TimestampMixin):
    __tablename__ = "credit_transactions"
    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(255))
    reference_id = db.Column(db.String(36), index=True)
    created_by = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "amount": self.amount,
            "transaction_type": self.transaction_type,
            "description": self.description,
            "reference_id": self.reference_id,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self):
        return f"<CreditTransaction {self.transaction_type} {self.amount}>"


class CreditConfig(db.Model, UpdateTimestampMixin):
    __tablename__ = "credit_config"
    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    config_key = db.Column(db.String(100), unique=True, nullable=False)
    config_value = db.Column(db.String(255), nullable=False)
    description = db.Column(db.String(255))
