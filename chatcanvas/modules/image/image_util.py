from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from chatcanvas import db
from chatcanvas.models.chat_models import Conversation
from chatcanvas.models.image_models import TASK_COMPLETED, TASK_FAILED, TASK_PROCESSING, ImageTask
from chatcanvas.models.mixins import utcnow
from chatcanvas.modules.credit.credit_util import check_and_reserve, release_reservation, settle_generation
from chatcanvas.utils.error_util import (
    ImageReferenceError,
    InsufficientCreditError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    commit_session,
)
from chatcanvas.utils.logging_util import configure_logging
from chatcanvas.utils.replicate_util import ReplicateProvider

logger = configure_logging()

NO_OUTPUT_ERROR = "No output received from processing service"
RECORDING_ERROR = "Failed to record the image processing result"


@dataclass
class TaskResult:
    task_id: str
    status: str
    output_image_url: Optional[str] = None
    error: Optional[str] = None
    prediction_id: Optional[str] = None

    @property
    def completed(self):
        return self.status == TASK_COMPLETED

    def to_dict(self):
        data = {"task_id": self.task_id, "status": self.status}
        if self.prediction_id:
            data["prediction_id"] = self.prediction_id
        if self.completed:
            data["processed_image_url"] = self.output_image_url
        else:
            data["error"] = self.error
        return data

    @classmethod
    def from_task(cls, task):
        return cls(
            task_id=task.id,
            status=task.status,
            output_image_url=task.processed_image_url,
            error=task.error_message,
            prediction_id=task.prediction_id,
        )


def get_image_provider():
    provider = current_app.extensions.get("image_provider")
    if provider is None:
        provider = ReplicateProvider.from_config(current_app.config)
        current_app.extensions["image_provider"] = provider
    return provider


def validate_prompt(prompt, max_length=None):
    max_length = max_length or current_app.config.get("MAX_PROMPT_LENGTH", 500)
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Missing required fields: prompt is required")
    prompt = prompt.strip()
    if len(prompt) > max_length:
        raise ValidationError(f"Prompt too long (max {max_length} characters)")
    return prompt


def parse_image_url(url, error_cls=ValidationError):
    """Return ``url`` normalized if it is an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        raise error_cls("Invalid image URL: must be a valid HTTP/HTTPS URL")
    candidate = url.strip()
    try:
        parsed = urlparse(candidate)
        hostname = parsed.hostname
    except ValueError as e:
        raise error_cls(f"Invalid image URL format: {e}") from e
    if parsed.scheme.lower() not in ("http", "https"):
        raise error_cls("Invalid image URL: must be a valid HTTP/HTTPS URL")
    if not hostname or any(char.isspace() for char in candidate):
        raise error_cls("Invalid image URL format")
    return parsed.geturl()


def host_is_allowed(hostname, allowed_domains):
    hostname = (hostname or "").lower().rstrip(".")
    return any(hostname == domain or hostname.endswith(f".{domain}") for domain in allowed_domains)


def validate_source_image_url(url, allowed_domains=None):
    if url is None or (isinstance(url, str) and not url.strip()):
        return None
    allowed_domains = allowed_domains if allowed_domains is not None else current_app.config["ALLOWED_IMAGE_DOMAINS"]
    clean_url = parse_image_url(url)
    hostname = urlparse(clean_url).hostname
    if not host_is_allowed(hostname, allowed_domains):
        logger.info(f"Rejected image URL from unauthorized domain: {hostname}")
        raise ImageReferenceError(f"Image URL must be from an authorized domain. Current domain: {hostname}")
    return clean_url


def process_image_request(user_id, prompt, source_image_url=None, conversation_id=None, provider=None):
    """Validate, reserve a credit, record an ImageTask and run the provider call to a terminal state."""
    prompt = validate_prompt(prompt)
    image_url = validate_source_image_url(source_image_url)
    if conversation_id:
        conversation = db.session.get(Conversation, conversation_id)
        if not conversation or conversation.user_id != user_id:
            raise NotFoundError("Conversation not found")

    credit_check = check_and_reserve(user_id)
    if not credit_check.allowed:
        raise InsufficientCreditError(credit_check.balance)

    task = ImageTask(
        user_id=user_id, conversation_id=conversation_id, original_image_url=image_url, prompt=prompt
    )
    db.session.add(task)
    try:
        commit_session(db.session, "create image task")
    except Exception:
        release_reservation(user_id)
        raise
    logger.info(f"Created image task {task.id} for user {user_id} ({'edit' if image_url else 'text-to-image'})")

    task_id = task.id
    settled = False
    try:
        try:
            provider = provider or get_image_provider()
            logger.info(f"Requesting generation for task {task_id} with prompt: {prompt}")
            prediction = provider.generate(prompt, image_url)
        except Exception as e:
            logger.error(f"Provider call failed for task {task_id}: {e}")
            return fail_task(task, str(e) or "Replicate API error")

        if prediction.output_url and not prediction.error:
            task.complete(prediction.output_url, prediction.prediction_id)
            commit_session(db.session, "complete image task")
            settled = settle_generation(user_id, task_id)
            logger.info(f"Task {task_id} completed: {prediction.output_url}")
            return TaskResult.from_task(task)

        error_message = prediction.error or NO_OUTPUT_ERROR
        logger.error(f"Task {task_id} failed with provider response: {error_message}")
        return fail_task(task, error_message, prediction.prediction_id)
    except Exception:
        mark_task_failed(task_id, RECORDING_ERROR)
        raise
    finally:
        if not settled:
            release_held_credit(user_id, task_id)


def fail_task(task, error_message, prediction_id=None):
    task.fail(error_message, prediction_id)
    commit_session(db.session, "record image task failure")
    return TaskResult(
        task_id=task.id, status=TASK_FAILED, error=task.error_message, prediction_id=task.prediction_id
    )


def mark_task_failed(task_id, error_message):
    """Move a task still in processing to failed with a fresh statement; terminal tasks are left alone."""
    try:
        result = db.session.execute(
            update(ImageTask)
            .where(ImageTask.id == task_id, ImageTask.status == TASK_PROCESSING)
            .values(status=TASK_FAILED, error_message=error_message, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        commit_session(db.session, "mark image task failed")
    except (PersistenceError, SQLAlchemyError) as e:
        db.session.rollback()
        logger.error(f"Could not mark task {task_id} failed: {e}")
        return False
    db.session.expire_all()
    return result.rowcount == 1


def release_held_credit(user_id, task_id):
    try:
        release_reservation(user_id)
    except PersistenceError as e:
        logger.error(f"Could not release credit reservation for task {task_id}: {e}")


def get_user_task(user_id, task_id):
    task = ImageTask.query.filter_by(id=task_id, user_id=user_id).first()
    if not task:
        raise NotFoundError("Image task not found")
    return task


def recent_tasks(user_id, limit=15):
    return ImageTask.query.filter_by(user_id=user_id).order_by(ImageTask.created_at.desc()).limit(limit).all()
