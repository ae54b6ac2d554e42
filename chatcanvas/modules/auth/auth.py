import click
from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from chatcanvas.modules.auth.auth_util import create_user, rotate_api_token
from chatcanvas.modules.credit.credit_util import get_credit_account

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/auth")


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    credit = get_credit_account(current_user.id)
    return jsonify(
        {
            "status": "success",
            "user": {
                "id": current_user.id,
                "username": current_user.username,
                "email": current_user.email,
                "is_admin": current_user.is_admin,
            },
            "credits": credit.to_dict() if credit else None,
        }
    )


@auth_bp.cli.command("create-user")
@click.argument("username")
@click.argument("email")
@click.option("--admin", is_flag=True, default=False, help="Grant access to the credit console.")
def create_user_command(username, email, admin):
    """Create a user and print its bearer token."""
    user, api_token = create_user(username, email, is_admin=admin)
    click.echo(f"User {user.id} created. API token: {api_token}")


@auth_bp.route("/rotate-token", methods=["POST"])
@login_required
def rotate_token():
    api_token = rotate_api_token(current_user)
    return jsonify({"status": "success", "api_token": api_token})
