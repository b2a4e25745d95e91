"""Image generation middleware.

Generates PNG images with an image model for every ``document-created``
event whose document is a text prompt, a source image or a scheduler tick.
Each generated image is written to object storage under its content hash and
announced with its own ``document-created`` event.

Example:
    ```python
    generator = (
        ImageGenerator.builder("image-gen")
        .with_image_model("stable-diffusion-xl")
        .with_task(TextToImageTask(text="A lighthouse at dusk"))
        .with_endpoint("http://inference:8080")
        .build()
    )
    ```
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from typing import Any, Self

from pydantic import ValidationError

from docchain.clients.inference import InferenceClient
from docchain.errors import ConfigurationError, ProcessingError
from docchain.events.types import DocumentEvent, DocumentRef, EventType
from docchain.nodes.image_tasks import ImageTask, parse_task
from docchain.pipeline.capabilities import ComputeType
from docchain.pipeline.conditions import Condition, when
from docchain.pipeline.consumer_types import ConsumerConfig
from docchain.pipeline.middleware import (
    Middleware,
    MiddlewareBuilder,
    MiddlewareDescription,
    MiddlewareProps,
    ProcessingContext,
)

logger = logging.getLogger(__name__)

DESCRIPTION = MiddlewareDescription(
    name="image-generator",
    description="Generates images from text prompts or source images with an image model.",
    version="1.0.0",
)

#: Maximum time one event may take, in seconds.
PROCESSING_TIMEOUT = 120.0

SCHEDULER_TYPE = "application/json+scheduler"
OUTPUT_TYPE = "image/png"
DEFAULT_IMAGE_MODEL = "stable-diffusion-xl"
DEFAULT_ENDPOINT = "http://localhost:8080"


class ImageGeneratorBuilder(MiddlewareBuilder["ImageGenerator"]):
    """Builder for :class:`ImageGenerator`."""

    def __init__(self, node_id: str) -> None:
        super().__init__(node_id)
        self._client: InferenceClient | None = None

    def with_image_model(self, model: str) -> Self:
        """Set the image model used to generate images."""
        if not model:
            raise ConfigurationError("Image model cannot be empty")
        self._options["image_model"] = model
        return self

    def with_task(self, task: ImageTask | dict[str, Any]) -> Self:
        """Set the task executed by the image model."""
        if isinstance(task, dict):
            try:
                task = parse_task(task)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid image task: {e}") from e
        self._options["task"] = task.model_dump(mode="json")
        return self

    def with_region(self, region: str) -> Self:
        """Set the region in which the model is invoked."""
        self._options["region"] = region
        return self

    def with_endpoint(self, endpoint: str) -> Self:
        """Set the base URL of the inference service."""
        self._options["endpoint"] = endpoint
        return self

    def with_client(self, client: InferenceClient) -> Self:
        """Use an existing inference client instead of creating one."""
        self._client = client
        return self

    def build(self) -> ImageGenerator:
        return ImageGenerator(self.props(ImageGenerator.default_consumer_config), client=self._client)


class ImageGenerator(Middleware):
    """Generates images with an image model."""

    description = DESCRIPTION
    supported_input_types = ("text/plain", "image/png", "image/jpeg", SCHEDULER_TYPE)
    supported_output_types = (OUTPUT_TYPE,)
    supported_compute_types = (ComputeType.CPU,)
    default_consumer_config = ConsumerConfig(
        batch_size=1,
        max_concurrency=2,
        processing_timeout=PROCESSING_TIMEOUT,
        visibility_window=2 * PROCESSING_TIMEOUT,
    )

    def __init__(self, props: MiddlewareProps, client: InferenceClient | None = None) -> None:
        super().__init__(props)
        options = props.options
        if "task" not in options:
            raise ConfigurationError(f"Image generator '{props.node_id}' requires a task")
        try:
            self.task: ImageTask = parse_task(dict(options["task"]))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid image task: {e}") from e

        self.image_model: str = options.get("image_model", DEFAULT_IMAGE_MODEL)
        self.region: str | None = options.get("region")
        self.endpoint: str = options.get("endpoint", DEFAULT_ENDPOINT)
        self.client = client or InferenceClient(self.endpoint, region=self.region)

    @classmethod
    def builder(cls, node_id: str) -> ImageGeneratorBuilder:
        return ImageGeneratorBuilder(node_id)

    def base_condition(self) -> Condition:
        """Supported input types, restricted to ``document-created`` events."""
        return super().base_condition().and_(when("type").equals(EventType.DOCUMENT_CREATED.value))

    async def aclose(self) -> None:
        await self.client.aclose()

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        storage = context.storage
        if storage is None:
            raise ProcessingError("No object storage bound", node_id=self.node_id, retryable=False)

        content: bytes | None = None
        media_type: str | None = event.document.media_type.essence
        if media_type == SCHEDULER_TYPE:
            # Scheduler ticks carry no content; the task supplies the prompt
            media_type = None
        else:
            content = await storage.get(event.document.url)

        request = self.task.build_request(content, media_type)

        response = await self.client.invoke(self.image_model, request)
        if response.get("error"):
            raise ProcessingError(f"Image model returned an error: {response['error']}", node_id=self.node_id)
        images = response.get("images")
        if not isinstance(images, list) or not images:
            raise ProcessingError("Image model returned no images", node_id=self.node_id)

        outputs: list[DocumentEvent] = []
        for index, encoded in enumerate(images):
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, TypeError, ValueError) as e:
                raise ProcessingError(
                    f"Image {index} is not valid base64", node_id=self.node_id, retryable=False
                ) from e

            url = await storage.put(data, OUTPUT_TYPE)
            document = DocumentRef(url=url, type=OUTPUT_TYPE, etag=hashlib.sha256(data).hexdigest(), size=len(data))
            outputs.append(
                event.derive(
                    self.node_id,
                    document=document,
                    event_type=EventType.DOCUMENT_CREATED,
                    metadata={"image": {"model": self.image_model, "task": self.task.task_type, "index": index}},
                )
            )

        logger.info(
            "Generated %d image(s) with %s for chain %s",
            len(outputs),
            self.image_model,
            event.chain_id,
        )
        return outputs


__all__ = [
    "DESCRIPTION",
    "PROCESSING_TIMEOUT",
    "SCHEDULER_TYPE",
    "ImageGenerator",
    "ImageGeneratorBuilder",
]
