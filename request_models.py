import base64
import io
from abc import abstractmethod
from typing import Any, ClassVar, Dict, Mapping, Optional

from PIL import Image
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from errors import DecodeError

MAX_UPLOAD_SIZE = 4096 * 1024

DEFAULT_TEXT_COLOR = "#ffffff"
DEFAULT_BACKGROUND_COLOR = "#000000"
DEFAULT_TEXT_SIZE = 14
DEFAULT_IMAGE_HEIGHT = 32
DEFAULT_IMAGE_WIDTH = 64


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class DeliveryOptions(BaseModel):
    return_image: bool = False
    installation_id: Optional[str] = None


class _DeliverableRequest(BaseModel):
    """Fields shared by every request kind that controls where the GIF goes."""

    template_name: ClassVar[str] = ""

    return_image: bool = False
    installation_id: Optional[str] = None

    @field_validator("installation_id", mode="before")
    @classmethod
    def _normalize_installation_id(cls, value):
        return _blank_to_none(value)

    def delivery_options(self) -> DeliveryOptions:
        return DeliveryOptions(return_image=self.return_image, installation_id=self.installation_id)

    @abstractmethod
    def apply_defaults(self):
        """Return a copy with every unset field filled in."""

    @abstractmethod
    def template_context(self) -> Dict[str, Any]:
        """Values exposed to the applet template."""


class NotifyRequest(_DeliverableRequest):
    template_name: ClassVar[str] = "notify"

    text: str = Field(..., min_length=1)
    textcolor: Optional[str] = None
    bgcolor: Optional[str] = None
    # 0 is treated as unset, matching the JSON zero value of older clients.
    textsize: Optional[int] = Field(default=None, ge=0)
    icon: Optional[str] = None

    @field_validator("textcolor", "bgcolor", "icon", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value):
        return _blank_to_none(value)

    def apply_defaults(self) -> "NotifyRequest":
        updates: Dict[str, Any] = {}
        if not self.textcolor:
            updates["textcolor"] = DEFAULT_TEXT_COLOR
        if not self.bgcolor:
            updates["bgcolor"] = DEFAULT_BACKGROUND_COLOR
        if not self.textsize:
            updates["textsize"] = DEFAULT_TEXT_SIZE
        return self.model_copy(update=updates)

    def template_context(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "textcolor": self.textcolor,
            "bgcolor": self.bgcolor,
            "textsize": self.textsize,
            "icon": self.icon,
        }


class ImageRequest(_DeliverableRequest):
    template_name: ClassVar[str] = "image"

    image: Optional[str] = Field(default=None, description="Remote image URL fetched by the applet at render time")
    image_data: Optional[str] = Field(default=None, description="Base64 encoded upload")
    bgcolor: Optional[str] = None
    height: Optional[int] = Field(default=None, ge=0)
    width: Optional[int] = Field(default=None, ge=0)
    delay: int = Field(default=0, ge=0, description="Frame delay in milliseconds passed to the applet")

    @field_validator("image", "bgcolor", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value):
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _ensure_single_source(self):
        if bool(self.image) == bool(self.image_data):
            raise ValueError("Exactly one of an image URL or an uploaded image is required.")
        return self

    def apply_defaults(self) -> "ImageRequest":
        updates: Dict[str, Any] = {}
        if not self.height:
            updates["height"] = DEFAULT_IMAGE_HEIGHT
        if not self.width:
            updates["width"] = DEFAULT_IMAGE_WIDTH
        if not self.bgcolor:
            updates["bgcolor"] = DEFAULT_BACKGROUND_COLOR
        return self.model_copy(update=updates)

    def template_context(self) -> Dict[str, Any]:
        return {
            "image_url": self.image,
            "image_data": self.image_data,
            "bgcolor": self.bgcolor,
            "height": self.height,
            "width": self.width,
            "delay": self.delay,
        }


def decode_notify(raw: bytes) -> NotifyRequest:
    try:
        return NotifyRequest.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError("Invalid notify request.", detail=str(exc)) from exc


def decode_image_json(raw: bytes) -> ImageRequest:
    try:
        request = ImageRequest.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError("Invalid image request.", detail=str(exc)) from exc
    if request.image_data is not None:
        raise DecodeError("Inline image data is only accepted as a multipart upload in the 'image' field.")
    return request


def verify_image_bytes(data: bytes) -> str:
    """Return the detected image format, raising DecodeError for anything Pillow cannot read."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format or "unknown"
            img.verify()
    except (OSError, ValueError, SyntaxError) as exc:
        raise DecodeError("The uploaded file is not a readable image.", detail=str(exc)) from exc
    return image_format


def decode_image_upload(
    data: bytes,
    fields: Mapping[str, Any],
    *,
    max_bytes: int = MAX_UPLOAD_SIZE,
) -> ImageRequest:
    if len(data) > max_bytes:
        raise DecodeError(
            f"The uploaded file is too big. Please choose a file that's less than {max_bytes // 1024} KB in size."
        )
    if not data:
        raise DecodeError("The 'image' upload is empty.")
    verify_image_bytes(data)

    payload = {key: value for key, value in fields.items() if key != "image" and value not in (None, "")}
    payload["image_data"] = base64.b64encode(data).decode("ascii")
    try:
        return ImageRequest.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError("Invalid image request.", detail=str(exc)) from exc
