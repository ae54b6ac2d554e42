from functools import wraps

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from chatcanvas.models.user_models import CreditTransaction
from chatcanvas.modules.credit.credit_util import ensure_credit_account, list_users_with_credits, top_up
from chatcanvas.utils.error_util import AuthorizationError
from chatcanvas.utils.forms_util import TopUpForm, validate_form

credit_bp = Blueprint("credit_bp", __name__, url_prefix="/credits")


def admin_required(func):
    @wraps(func)
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            raise AuthorizationError("Administrator access required.")
        return func(*args, **kwargs)

    return decorated_function


@credit_bp.route("/balance", methods=["GET"])
@login_required
def balance():
    credit = ensure_credit_account(current_user.id)
    return jsonify({"status": "success", **credit.to_dict()})


@credit_bp.route("/transactions", methods=["GET"])
@login_required
def transactions():
    page = request.args.get("page", 1, type=int)
    per_page = min(request.args.get("per_page", 20, type=int), 100)
    paginated = (
        CreditTransaction.query.filter_by(user_id=current_user.id)
        .order_by(CreditTransaction.created_at.desc())
        .paginate(page=page, per_page=per_page, error_out=False)
    )
    return jsonify(
        {
            "status": "success",
            "transactions": [transaction.to_dict() for transaction in paginated.items],
            "has_next": paginated.has_next,
            "next_page": paginated.next_num,
        }
    )


@credit_bp.route("/topup", methods=["POST"])
@login_required
@admin_required
def topup():
    form = validate_form(TopUpForm())
    credits = top_up(form.user_id.data, form.amount_yuan.data, created_by=current_user.id)
    if not credits:
        return jsonify({"status": "error", "error_type": "validation_error", "message": "Top-up failed"}), 400
    return jsonify({"status": "success", "credits_added": credits, "message": f"Added {credits} credits"})


@credit_bp.route("/users", methods=["GET"])
@login_required
@admin_required
def users():
    return jsonify({"status": "success", "users": list_users_with_credits(request.args.get("q"))})
