"""
Pydantic schemas for image generation tasks.

A task describes what the image model should do with an incoming document.
Each task renders itself into the model's JSON request body, taking the
prompt or the source image from the document when the task does not carry
its own.
"""

import base64
from abc import ABC, abstractmethod
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from docchain.errors import ProcessingError


class ImageQuality(str, Enum):
    """Quality of generated images."""

    STANDARD = "standard"
    PREMIUM = "premium"


class OutpaintingMode(str, Enum):
    """How strictly outpainting preserves the masked region."""

    DEFAULT = "DEFAULT"
    PRECISE = "PRECISE"


class ImageGenerationParameters(BaseModel):
    """Generation settings shared by every task."""

    number_of_images: int = Field(default=1, ge=1, le=5)
    quality: ImageQuality = ImageQuality.STANDARD
    height: int = Field(default=1024, ge=320, le=4096)
    width: int = Field(default=1024, ge=320, le=4096)
    cfg_scale: float = Field(default=8.0, ge=1.1, le=10.0)
    seed: int | None = Field(default=None, ge=0, le=2147483646)

    model_config = ConfigDict(frozen=True)

    def to_request(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "numberOfImages": self.number_of_images,
            "quality": self.quality.value,
            "height": self.height,
            "width": self.width,
            "cfgScale": self.cfg_scale,
        }
        if self.seed is not None:
            body["seed"] = self.seed
        return body


class _ImageTaskBase(BaseModel, ABC):
    """Fields and helpers common to all tasks."""

    text: str | None = Field(default=None, max_length=512)
    negative_text: str | None = Field(default=None, max_length=512)
    image_generation_parameters: ImageGenerationParameters = Field(default_factory=ImageGenerationParameters)

    model_config = ConfigDict(frozen=True)

    def _prompt(self, content: bytes | None, media_type: str | None) -> str | None:
        """Task text, or the document text for ``text/plain`` documents."""
        if self.text:
            return self.text
        if content is not None and media_type == "text/plain":
            prompt = content.decode("utf-8", errors="replace").strip()
            return prompt[:512] or None
        return None

    @staticmethod
    def _image(content: bytes | None, media_type: str | None) -> str:
        if content is None or media_type not in ("image/png", "image/jpeg"):
            raise ProcessingError(f"Task requires a PNG or JPEG source image, got '{media_type}'", retryable=False)
        return base64.b64encode(content).decode("ascii")

    def _text_params(self, prompt: str | None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if prompt:
            params["text"] = prompt
        if self.negative_text:
            params["negativeText"] = self.negative_text
        return params

    @abstractmethod
    def build_request(self, content: bytes | None = None, media_type: str | None = None) -> dict[str, Any]:
        """Render the model request body for a document.

        Args:
            content: Document content, or None for scheduler events
            media_type: Document media type

        Raises:
            ProcessingError: If the document cannot feed this task (not retryable)
        """


class TextToImageTask(_ImageTaskBase):
    """Generate images from a text prompt."""

    task_type: Literal["TEXT_IMAGE"] = "TEXT_IMAGE"

    def build_request(self, content: bytes | None = None, media_type: str | None = None) -> dict[str, Any]:
        prompt = self._prompt(content, media_type)
        if not prompt:
            raise ProcessingError("Text-to-image task has no prompt", retryable=False)
        return {
            "taskType": self.task_type,
            "textToImageParams": self._text_params(prompt),
            "imageGenerationConfig": self.image_generation_parameters.to_request(),
        }


class _MaskedTask(_ImageTaskBase):
    mask_prompt: str | None = None
    mask_image: str | None = None  # Base64-encoded mask

    @model_validator(mode="after")
    def validate_mask(self) -> "_MaskedTask":
        if bool(self.mask_prompt) == bool(self.mask_image):
            raise ValueError("Exactly one of mask_prompt or mask_image must be set")
        return self

    def _mask_params(self, content: bytes | None, media_type: str | None) -> dict[str, Any]:
        params = self._text_params(self.text)
        params["image"] = self._image(content, media_type)
        if self.mask_prompt:
            params["maskPrompt"] = self.mask_prompt
        else:
            params["maskImage"] = self.mask_image
        return params


class ImageInpaintingTask(_MaskedTask):
    """Repaint the masked region of the source image."""

    task_type: Literal["INPAINTING"] = "INPAINTING"

    def build_request(self, content: bytes | None = None, media_type: str | None = None) -> dict[str, Any]:
        return {
            "taskType": self.task_type,
            "inPaintingParams": self._mask_params(content, media_type),
            "imageGenerationConfig": self.image_generation_parameters.to_request(),
        }


class ImageOutpaintingTask(_MaskedTask):
    """Extend the source image beyond the masked region."""

    task_type: Literal["OUTPAINTING"] = "OUTPAINTING"
    outpainting_mode: OutpaintingMode = OutpaintingMode.DEFAULT

    def build_request(self, content: bytes | None = None, media_type: str | None = None) -> dict[str, Any]:
        params = self._mask_params(content, media_type)
        params["outPaintingMode"] = self.outpainting_mode.value
        return {
            "taskType": self.task_type,
            "outPaintingParams": params,
            "imageGenerationConfig": self.image_generation_parameters.to_request(),
        }


class ImageVariationTask(_ImageTaskBase):
    """Generate variations of the source image."""

    task_type: Literal["IMAGE_VARIATION"] = "IMAGE_VARIATION"

    def build_request(self, content: bytes | None = None, media_type: str | None = None) -> dict[str, Any]:
        params = self._text_params(self.text)
        params["images"] = [self._image(content, media_type)]
        return {
            "taskType": self.task_type,
            "imageVariationParams": params,
            "imageGenerationConfig": self.image_generation_parameters.to_request(),
        }


ImageTask = Annotated[
    TextToImageTask | ImageInpaintingTask | ImageOutpaintingTask | ImageVariationTask,
    Field(discriminator="task_type"),
]

_task_adapter: TypeAdapter[Any] = TypeAdapter(ImageTask)


def parse_task(data: dict[str, Any]) -> ImageTask:
    """Validate a task from its JSON form, dispatching on ``task_type``."""
    return _task_adapter.validate_python(data)


__all__ = [
    "ImageQuality",
    "OutpaintingMode",
    "ImageGenerationParameters",
    "TextToImageTask",
    "ImageInpaintingTask",
    "ImageOutpaintingTask",
    "ImageVariationTask",
    "ImageTask",
    "parse_task",
]
