"""Concrete middlewares.

Nodes:
    - ImageGenerator: Generates PNG images with an image model
    - StorageEventTrigger: Turns storage notifications into document events
"""

from docchain.nodes.image_generator import ImageGenerator, ImageGeneratorBuilder
from docchain.nodes.image_tasks import (
    ImageGenerationParameters,
    ImageInpaintingTask,
    ImageOutpaintingTask,
    ImageTask,
    ImageVariationTask,
    TextToImageTask,
    parse_task,
)
from docchain.nodes.storage_trigger import StorageEventTrigger, StorageEventTriggerBuilder

__all__ = [
    "ImageGenerator",
    "ImageGeneratorBuilder",
    "ImageGenerationParameters",
    "ImageInpaintingTask",
    "ImageOutpaintingTask",
    "ImageTask",
    "ImageVariationTask",
    "TextToImageTask",
    "parse_task",
    "StorageEventTrigger",
    "StorageEventTriggerBuilder",
]
