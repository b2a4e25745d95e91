"""Model inference client.

HTTP client that calls an inference service's ``/model/{model}/invoke``
endpoint with a JSON request body and returns the decoded JSON response.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

import httpx

from docchain.errors import ProcessingError

logger = logging.getLogger(__name__)

# Statuses worth retrying; other 4xx responses mean the request itself is wrong
_RETRYABLE_STATUSES = {408, 429}


class InferenceClient:
    """HTTP client for model invocation.

    Example:
        client = InferenceClient("http://inference:8080")

        async with client:
            response = await client.invoke("stable-diffusion-xl", {"taskType": "TEXT_IMAGE", ...})
            images = response["images"]

    Args:
        endpoint: Base URL of the inference service
        region: Optional region forwarded to the service
        timeout: Request timeout in seconds
        transport: Optional httpx transport (used in tests)
    """

    DEFAULT_TIMEOUT = 110.0  # Leaves headroom under the 2 minute processing timeout

    def __init__(
        self,
        endpoint: str,
        region: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise ValueError("Inference endpoint is required")
        self.endpoint = endpoint.rstrip("/")
        self.region = region
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.region:
                headers["X-Inference-Region"] = self.region
            self._client = httpx.AsyncClient(
                base_url=self.endpoint,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def invoke(self, model: str, body: dict[str, Any]) -> dict[str, Any]:
        """Invoke *model* with *body*.

        Args:
            model: Model identifier
            body: JSON request body

        Returns:
            Decoded JSON response

        Raises:
            ProcessingError: On timeouts, connection errors and error
                responses; client errors other than 408/429 are not retryable
        """
        try:
            response = await self._get_client().post(f"/model/{model}/invoke", json=body)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProcessingError(f"Inference request for {model} timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text[:500]
            retryable = status >= 500 or status in _RETRYABLE_STATUSES
            raise ProcessingError(f"Inference error ({status}) for {model}: {detail}", retryable=retryable) from e
        except httpx.RequestError as e:
            raise ProcessingError(f"Connection error to inference service: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ProcessingError(f"Invalid JSON returned by {model}", retryable=False) from e
        if not isinstance(data, dict):
            raise ProcessingError(f"Unexpected response shape from {model}", retryable=False)

        logger.debug("Invoked %s (%d response bytes)", model, len(response.content))
        return data

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> InferenceClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()


__all__ = ["InferenceClient"]
