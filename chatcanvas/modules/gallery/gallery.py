from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from chatcanvas.modules.gallery.gallery_util import add_favorite, list_favorites, remove_favorite
from chatcanvas.utils.forms_util import FavoriteImageForm, UnfavoriteImageForm, validate_form

gallery_bp = Blueprint("gallery_bp", __name__, url_prefix="/gallery")


@gallery_bp.route("/favorites", methods=["GET"])
@login_required
def favorites():
    items = list_favorites(current_user.id, request.args.get("conversation_id"))
    return jsonify({"status": "success", "favorites": [favorite.to_dict() for favorite in items]})


@gallery_bp.route("/favorites", methods=["POST"])
@login_required
def favorite_image():
    form = validate_form(FavoriteImageForm())
    favorite, created = add_favorite(
        current_user.id, form.conversation_id.data, form.message_id.data, form.image_url.data
    )
    return jsonify({"status": "success", "favorite": favorite.to_dict(), "created": created}), 201 if created else 200


@gallery_bp.route("/favorites", methods=["DELETE"])
@login_required
def unfavorite_image():
    form = validate_form(UnfavoriteImageForm())
    removed = remove_favorite(current_user.id, form.image_url.data)
    return jsonify({"status": "success", "removed": removed})
