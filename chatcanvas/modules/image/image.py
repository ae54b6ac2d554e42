from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from chatcanvas.modules.image.image_util import get_user_task, process_image_request, recent_tasks
from chatcanvas.utils.forms_util import ImageProcessForm, validate_form

image_bp = Blueprint("image_bp", __name__, url_prefix="/image")


@image_bp.route("/process", methods=["POST"])
@login_required
def process_image():
    form = validate_form(ImageProcessForm())
    result = process_image_request(
        user_id=current_user.id,
        prompt=form.prompt.data,
        source_image_url=form.original_image_url.data or None,
        conversation_id=form.conversation_id.data or None,
    )
    if result.completed:
        return jsonify(result.to_dict())
    body = result.to_dict()
    body["error_type"] = "provider_error"
    return jsonify(body), 500


@image_bp.route("/tasks/<string:task_id>", methods=["GET"])
@login_required
def task_status(task_id):
    task = get_user_task(current_user.id, task_id)
    return jsonify(task.to_dict())


@image_bp.route("/history", methods=["GET"])
@login_required
def image_history():
    limit = min(request.args.get("limit", 15, type=int), 100)
    return jsonify({"status": "success", "tasks": [task.to_dict() for task in recent_tasks(current_user.id, limit)]})
