from flask_wtf import FlaskForm
from wtforms import FloatField, StringField
from wtforms.validators import AnyOf, DataRequired, Length, NumberRange, Optional

from chatcanvas.utils.error_util import ValidationError


class NewConversationForm(FlaskForm):
    title = StringField("Title", validators=[Optional(), Length(min=1, max=100)])


class RenameConversationForm(FlaskForm):
    title = StringField("Title", validators=[DataRequired(), Length(min=1, max=100)])


class ThumbnailForm(FlaskForm):
    thumbnail_url = StringField("Thumbnail URL", validators=[DataRequired(), Length(max=512)])


class MessageForm(FlaskForm):
    role = StringField("Role", validators=[Optional(), AnyOf(["user", "assistant"])])
    content = StringField("Content", validators=[Optional(), Length(max=4000)])
    image_url = StringField("Image URL", validators=[Optional(), Length(max=512)])


class AgentTurnForm(FlaskForm):
    conversation_id = StringField("Conversation ID", validators=[DataRequired(message="Missing required fields")])
    message = StringField("Message", validators=[DataRequired(message="Missing required fields")])
    image_url = StringField("Image URL", validators=[Optional(), Length(max=512)])


class ImageProcessForm(FlaskForm):
    prompt = StringField("Prompt", validators=[DataRequired(message="Missing required fields: prompt is required")])
    original_image_url = StringField("Original image URL", validators=[Optional()])
    conversation_id = StringField("Conversation ID", validators=[Optional()])


class FavoriteImageForm(FlaskForm):
    conversation_id = StringField("Conversation ID", validators=[DataRequired()])
    message_id = StringField("Message ID", validators=[DataRequired()])
    image_url = StringField("Image URL", validators=[DataRequired(), Length(max=512)])


class UnfavoriteImageForm(FlaskForm):
    image_url = StringField("Image URL", validators=[DataRequired(), Length(max=512)])


class TopUpForm(FlaskForm):
    user_id = StringField("User ID", validators=[DataRequired()])
    amount_yuan = FloatField("Amount", validators=[DataRequired(), NumberRange(min=0.01)])


def validate_form(form):
    """Run ``validate_on_submit`` and raise the first field error as a ValidationError."""
    if form.validate_on_submit():
        return form
    for field_name, errors in form.errors.items():
        if errors:
            message = errors[0]
            if isinstance(message, str) and message.startswith("Missing required fields"):
                raise ValidationError(message)
            raise ValidationError(f"{field_name}: {message}")
    raise ValidationError("Invalid request.")
