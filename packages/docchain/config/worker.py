# docchain/config/worker.py

import math
from typing import Any

from pydantic import model_validator

from docchain.pipeline.consumer_types import DEFAULT_PROCESSING_TIMEOUT, ConsumerConfig

from .base import BaseConfig


class WorkerConfig(BaseConfig):
    """
    Worker-specific configuration.
    Contains the node a worker process runs and how it consumes its queue.
    """

    # Node Selection
    NODE_TYPE: str = "image-generator"
    NODE_ID: str = "image-generator"

    # Queue Consumption
    BATCH_SIZE: int = 1
    MAX_CONCURRENCY: int = 2
    PROCESSING_TIMEOUT_SECONDS: float = DEFAULT_PROCESSING_TIMEOUT
    VISIBILITY_WINDOW_SECONDS: float | None = None  # Defaults to twice the batch deadline
    MAX_RECEIVE_COUNT: int = 5
    RECEIVE_WAIT_SECONDS: float = 20.0
    CONSECUTIVE_FAILURE_THRESHOLD: int = 10

    # Image Generation
    INFERENCE_ENDPOINT: str = "http://localhost:8080"
    INFERENCE_REGION: str | None = None
    IMAGE_MODEL: str = "stable-diffusion-xl"
    TASK: dict[str, Any] | None = None  # JSON, e.g. {"task_type": "TEXT_IMAGE", "text": "..."}

    @model_validator(mode="after")
    def validate_timeouts(self) -> "WorkerConfig":
        window = self.VISIBILITY_WINDOW_SECONDS
        rounds = math.ceil(self.BATCH_SIZE / max(self.MAX_CONCURRENCY, 1))
        if window is not None and window < rounds * self.PROCESSING_TIMEOUT_SECONDS:
            raise ValueError(
                "VISIBILITY_WINDOW_SECONDS must cover PROCESSING_TIMEOUT_SECONDS for every "
                "round of MAX_CONCURRENCY items in a batch of BATCH_SIZE"
            )
        return self

    def consumer_config(self) -> ConsumerConfig:
        """Map the queue settings onto a consumer configuration."""
        return ConsumerConfig(
            batch_size=self.BATCH_SIZE,
            max_concurrency=self.MAX_CONCURRENCY,
            processing_timeout=self.PROCESSING_TIMEOUT_SECONDS,
            visibility_window=self.VISIBILITY_WINDOW_SECONDS,
            max_receive_count=self.MAX_RECEIVE_COUNT,
            receive_wait=self.RECEIVE_WAIT_SECONDS,
            consecutive_failure_threshold=self.CONSECUTIVE_FAILURE_THRESHOLD,
        )
