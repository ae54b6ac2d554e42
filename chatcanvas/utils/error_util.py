"""Error kinds shared by the server endpoints and the client store.

Server components raise these; the Flask handlers below render them as
``{"status": "error", "error_type": ..., "message": ...}`` and the client
gateway turns that body back into the same class, so neither side has to
look at backend-specific error shapes.
"""
from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import RequestEntityTooLarge

from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()


class ChatCanvasError(Exception):
    status_code = 500
    error_type = "error"

    def __init__(self, message, **payload):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self):
        body = {"status": "error", "error_type": self.error_type, "message": self.message}
        body.update({key: value for key, value in self.payload.items() if value is not None})
        return body


class ValidationError(ChatCanvasError):
    status_code = 400
    error_type = "validation_error"


class ImageReferenceError(ValidationError):
    error_type = "invalid_image_reference"


class AuthorizationError(ChatCanvasError):
    status_code = 403
    error_type = "forbidden"


class NotFoundError(ChatCanvasError):
    status_code = 404
    error_type = "not_found"


class InsufficientCreditError(ChatCanvasError):
    status_code = 402
    error_type = "insufficient_credit"

    def __init__(self, balance, message=None):
        super().__init__(
            message or "Insufficient credits. Need 1 credit to generate image.", current_balance=balance
        )
        self.balance = balance


class ProviderError(ChatCanvasError):
    status_code = 500
    error_type = "provider_error"

    def __init__(self, message, task_id=None):
        super().__init__(message, task_id=task_id, task_status="failed" if task_id else None)
        self.task_id = task_id


class PersistenceError(ChatCanvasError):
    status_code = 500
    error_type = "persistence_error"


class TransientNetworkError(ChatCanvasError):
    status_code = 503
    error_type = "network_error"


ERROR_TYPES = {
    cls.error_type: cls
    for cls in (
        ValidationError,
        ImageReferenceError,
        AuthorizationError,
        NotFoundError,
        InsufficientCreditError,
        ProviderError,
        PersistenceError,
        TransientNetworkError,
    )
}


def error_from_payload(status_code, payload):
    """Rebuild the error kind described by an error response body."""
    payload = payload if isinstance(payload, dict) else {}
    message = payload.get("message") or payload.get("error") or f"Request failed with status {status_code}"
    error_cls = ERROR_TYPES.get(payload.get("error_type"))
    if error_cls is None:
        if status_code == 402:
            error_cls = InsufficientCreditError
        elif status_code in (400, 413, 422):
            error_cls = ValidationError
        elif status_code in (401, 403):
            error_cls = AuthorizationError
        elif status_code == 404:
            error_cls = NotFoundError
        else:
            error_cls = PersistenceError

    if error_cls is InsufficientCreditError:
        return InsufficientCreditError(payload.get("current_balance", 0), message)
    if error_cls is ProviderError:
        return ProviderError(message, task_id=payload.get("task_id"))
    return error_cls(message)


def commit_session(session, action="save changes"):
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error while trying to {action}: {e}")
        raise PersistenceError(f"Failed to {action}.") from e


def register_error_handlers(app):
    @app.errorhandler(ChatCanvasError)
    def handle_chatcanvas_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def file_too_large(e):
        error = ValidationError("Image files cannot exceed 10MB.")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e):
        from chatcanvas import db

        db.session.rollback()
        logger.error(f"Unhandled database error: {e}")
        error = PersistenceError("A database error occurred.")
        return jsonify(error.to_dict()), error.status_code
