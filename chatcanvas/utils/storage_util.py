import io
import os
import uuid

import cloudinary.uploader
from PIL import Image, UnidentifiedImageError

from chatcanvas.utils.error_util import PersistenceError, ValidationError
from chatcanvas.utils.logging_util import configure_logging

logger = configure_logging()

ALLOWED_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


def allowed_file(filename):
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def read_image_upload(file, allowed_mimetypes, max_size):
    """Return the bytes of an uploaded image after type and size checks."""
    if file is None or not file.filename:
        raise ValidationError("No image file provided.")
    mimetype = (file.mimetype or "").lower()
    if not mimetype.startswith("image/") or (allowed_mimetypes and mimetype not in allowed_mimetypes):
        raise ValidationError("Only image files can be uploaded.")
    if not allowed_file(file.filename):
        raise ValidationError(f"Unsupported image file extension: {file.filename}")

    data = file.read()
    if not data:
        raise ValidationError("Uploaded image is empty.")
    if len(data) > max_size:
        raise ValidationError(f"Image files cannot exceed {max_size // (1024 * 1024)}MB.")

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Uploaded file is not a readable image.") from e
    return data


class CloudinaryStorage:
    """Stores image bytes in Cloudinary and hands back the public URL."""

    def __init__(self, folder="chatcanvas"):
        self.folder = folder

    def store(self, data, filename, user_id):
        extension = os.path.splitext(filename)[1].lstrip(".").lower() or "png"
        public_id = f"{user_id}/{uuid.uuid4()}"
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(data),
                folder=self.folder,
                public_id=public_id,
                resource_type="image",
                format=extension,
            )
        except Exception as e:
            logger.error(f"Cloudinary upload failed for user {user_id}: {e}")
            raise PersistenceError(f"Image upload failed: {e}") from e

        url = result.get("secure_url") or result.get("url")
        if not url:
            raise PersistenceError("Failed to generate image URL")
        logger.info(f"Stored upload for user {user_id} at {url}")
        return url
