"""Per-user credit balance and the gate in front of image generation.

Balance arithmetic is done by single conditional UPDATE statements so the
database serializes concurrent requests for the same user. A generation
first reserves one unit, then either settles it (debit + ledger row) after
the provider succeeds or releases it when the attempt fails.
"""
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from chatcanvas import db
from chatcanvas.models.mixins import utcnow
from chatcanvas.models.user_models import CreditConfig, CreditTransaction, User, UserCredit
from chatcanvas.utils.error_util import ValidationError, commit_session
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

GENERATION_COST = 1
GENERATION_TRANSACTION = "generation"
TOPUP_TRANSACTION = "admin_topup"
SIGNUP_TRANSACTION = "signup_bonus"


@dataclass
class CreditCheck:
    allowed: bool
    balance: int


def get_credit_account(user_id):
    return UserCredit.query.filter_by(user_id=user_id).first()


def get_balance(user_id):
    credit = get_credit_account(user_id)
    return credit.available if credit else 0


def ensure_credit_account(user_id):
    credit = get_credit_account(user_id)
    if credit:
        return credit

    bonus = max(int(get_config_value("signup_bonus", current_app.config.get("SIGNUP_CREDIT_BONUS", 0))), 0)
    credit = UserCredit(user_id=user_id, current_balance=bonus, total_earned=bonus)
    db.session.add(credit)
    if bonus:
        db.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=bonus,
                transaction_type=SIGNUP_TRANSACTION,
                description="Signup bonus",
            )
        )
    try:
        db.session.commit()
    except IntegrityError:
        # another request created the row first
        db.session.rollback()
        return get_credit_account(user_id)
    return credit


def check_and_reserve(user_id):
    """Hold one credit for a generation attempt if the user can afford it."""
    result = db.session.execute(
        update(UserCredit)
        .where(
            UserCredit.user_id == user_id,
            UserCredit.current_balance - UserCredit.reserved >= GENERATION_COST,
        )
        .values(reserved=UserCredit.reserved + GENERATION_COST, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    commit_session(db.session, "reserve credits")
    db.session.expire_all()

    balance = get_balance(user_id)
    if result.rowcount != 1:
        logger.info(f"Insufficient credits for user {user_id}: available balance {balance}")
        return CreditCheck(allowed=False, balance=balance)
    return CreditCheck(allowed=True, balance=balance)


def settle_generation(user_id, task_id):
    """Turn a reservation into a debit once the provider produced an image."""
    result = db.session.execute(
        update(UserCredit)
        .where(
            UserCredit.user_id == user_id,
            UserCredit.reserved >= GENERATION_COST,
            UserCredit.current_balance >= GENERATION_COST,
        )
        .values(
            current_balance=UserCredit.current_balance - GENERATION_COST,
            reserved=UserCredit.reserved - GENERATION_COST,
            total_spent=UserCredit.total_spent + GENERATION_COST,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.error(f"No reservation to settle for user {user_id} and task {task_id}")
        return False

    db.session.add(
        CreditTransaction(
            user_id=user_id,
            amount=-GENERATION_COST,
            transaction_type=GENERATION_TRANSACTION,
            description="AI image generation",
            reference_id=task_id,
        )
    )
    commit_session(db.session, "debit credits")
    db.session.expire_all()
    logger.info(f"Debited {GENERATION_COST} credit from user {user_id} for task {task_id}")
    return True


def release_reservation(user_id):
    result = db.session.execute(
        update(UserCredit)
        .where(UserCredit.user_id == user_id, UserCredit.reserved >= GENERATION_COST)
        .values(reserved=UserCredit.reserved - GENERATION_COST, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    commit_session(db.session, "release credit reservation")
    db.session.expire_all()
    return result.rowcount == 1


def adjust_balance(user_id, amount, transaction_type, description=None, reference_id=None, created_by=None):
    """Apply a signed adjustment; refuses anything that would leave the balance below what is reserved."""
    amount = int(amount)
    if amount == 0:
        raise ValidationError("Credit adjustment must be non-zero.")
    ensure_credit_account(user_id)

    result = db.session.execute(
        update(UserCredit)
        .where(UserCredit.user_id == user_id, UserCredit.current_balance + amount >= UserCredit.reserved)
        .values(
            current_balance=UserCredit.current_balance + amount,
            total_earned=UserCredit.total_earned + max(amount, 0),
            total_spent=UserCredit.total_spent + max(-amount, 0),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.info(f"Refused credit adjustment of {amount} for user {user_id}")
        return False

    db.session.add(
        CreditTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            reference_id=reference_id,
            created_by=created_by,
        )
    )
    commit_session(db.session, "adjust credits")
    db.session.expire_all()
    return True


def get_config_value(config_key, default):
    row = CreditConfig.query.filter_by(config_key=config_key).first()
    return row.config_value if row else default


def credits_for_amount(amount_yuan):
    rate = Decimal(str(get_config_value("yuan_per_credit", current_app.config.get("CREDIT_YUAN_PER_UNIT", 0.8))))
    if rate <= 0:
        raise ValidationError("Credit exchange rate is not configured.")
    return int((Decimal(str(amount_yuan)) / rate).to_integral_value(rounding=ROUND_FLOOR))


def top_up(user_id, amount_yuan, created_by=None):
    credits = credits_for_amount(amount_yuan)
    if credits < 1:
        raise ValidationError("Top-up amount is too small for a single credit.")
    if not db.session.get(User, user_id):
        raise ValidationError(f"Unknown user: {user_id}")
    applied = adjust_balance(
        user_id,
        credits,
        TOPUP_TRANSACTION,
        description=f"Admin top-up: ¥{amount_yuan} = {credits} credits",
        created_by=created_by,
    )
    return credits if applied else 0


def list_users_with_credits(search_term=None):
    query = db.session.query(User, UserCredit).outerjoin(UserCredit, UserCredit.user_id == User.id)
    if search_term and search_term.strip():
        pattern = f"%{search_term.strip()}%"
        query = query.filter(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
    rows = []
    for user, credit in query.order_by(User.created_at.desc()).all():
        rows.append(
            {
                "user_id": user.id,
                "email": user.email,
                "username": user.username,
                "current_balance": credit.current_balance if credit else 0,
                "total_earned": credit.total_earned if credit else 0,
                "total_spent": credit.total_spent if credit else 0,
                "credit_created_at": credit.created_at.isoformat() if credit else None,
                "credit_updated_at": credit.updated_at.isoformat() if credit else None,
            }
        )
    return rows
