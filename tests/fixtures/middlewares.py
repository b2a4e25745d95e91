"""Middlewares and event factories shared by the test suite."""

import asyncio
from typing import Any, Self

from docchain.errors import ProcessingError
from docchain.events import DocumentEvent, DocumentRef, EventType
from docchain.pipeline import (
    ComputeType,
    Middleware,
    MiddlewareBuilder,
    MiddlewareDescription,
    ProcessingContext,
)


def make_event(
    url: str = "s3://inbox/doc.txt",
    media_type: str = "text/plain",
    event_type: EventType | str = EventType.DOCUMENT_CREATED,
    **kwargs: Any,
) -> DocumentEvent:
    """Build an event for a document at *url*."""
    return DocumentEvent(event_type=event_type, document=DocumentRef(url=url, type=media_type), **kwargs)


class EchoBuilder(MiddlewareBuilder["EchoMiddleware"]):
    def with_delay(self, seconds: float) -> Self:
        self._options["delay"] = seconds
        return self

    def failing_on(self, *urls: str) -> Self:
        self._options["fail_on"] = list(urls)
        return self

    def crashing_on(self, *urls: str) -> Self:
        self._options["crash_on"] = list(urls)
        return self

    def with_fan_out(self, count: int) -> Self:
        self._options["fan_out"] = count
        return self

    def build(self) -> "EchoMiddleware":
        return EchoMiddleware(self.props(EchoMiddleware.default_consumer_config))


class EchoMiddleware(Middleware):
    """Re-publishes accepted text and image events, recording what it saw."""

    description = MiddlewareDescription(name="echo", description="Echoes events", version="0.0.1")
    supported_input_types = ("text/plain", "image/*")
    supported_output_types = ("text/plain", "image/*")
    supported_compute_types = (ComputeType.CPU, ComputeType.GPU)

    def __init__(self, props: Any) -> None:
        super().__init__(props)
        self.seen: list[DocumentEvent] = []
        self.active = 0
        self.peak = 0

    @classmethod
    def builder(cls, node_id: str) -> EchoBuilder:
        return EchoBuilder(node_id)

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        self.seen.append(event)
        options = self.props.options
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if options.get("delay"):
                await asyncio.sleep(options["delay"])
            if event.document.url in options.get("fail_on", ()):
                raise ProcessingError(f"cannot process {event.document.url}", node_id=self.node_id)
            if event.document.url in options.get("crash_on", ()):
                raise RuntimeError("boom")
        finally:
            self.active -= 1
        return [
            event.derive(self.node_id, metadata={"echoed_by": self.node_id, "copy": i})
            for i in range(options.get("fan_out", 1))
        ]


class PdfBuilder(MiddlewareBuilder["PdfToTextMiddleware"]):
    def build(self) -> "PdfToTextMiddleware":
        return PdfToTextMiddleware(self.props(PdfToTextMiddleware.default_consumer_config))


class PdfToTextMiddleware(Middleware):
    """Accepts PDF documents only."""

    description = MiddlewareDescription(name="pdf-to-text")
    supported_input_types = ("application/pdf",)
    supported_output_types = ("text/plain",)

    @classmethod
    def builder(cls, node_id: str) -> PdfBuilder:
        return PdfBuilder(node_id)

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        document = DocumentRef(url=event.document.url + ".txt", type="text/plain")
        return [event.derive(self.node_id, document=document)]


class AudioBuilder(MiddlewareBuilder["AudioSinkMiddleware"]):
    def build(self) -> "AudioSinkMiddleware":
        return AudioSinkMiddleware(self.props(AudioSinkMiddleware.default_consumer_config))


class AudioSinkMiddleware(Middleware):
    """Consumes audio and produces nothing downstream nodes can use."""

    description = MiddlewareDescription(name="audio-sink")
    supported_input_types = ("audio/*",)
    supported_output_types = ("audio/*",)

    @classmethod
    def builder(cls, node_id: str) -> AudioBuilder:
        return AudioBuilder(node_id)

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        return []


class ThumbnailBuilder(MiddlewareBuilder["ThumbnailMiddleware"]):
    def build(self) -> "ThumbnailMiddleware":
        return ThumbnailMiddleware(self.props(ThumbnailMiddleware.default_consumer_config))


class ThumbnailMiddleware(Middleware):
    """Accepts PNG and JPEG images and emits one PNG thumbnail each."""

    description = MiddlewareDescription(name="thumbnail")
    supported_input_types = ("image/png", "image/jpeg")
    supported_output_types = ("image/png",)

    @classmethod
    def builder(cls, node_id: str) -> ThumbnailBuilder:
        return ThumbnailBuilder(node_id)

    async def process(self, event: DocumentEvent, context: ProcessingContext) -> list[DocumentEvent]:
        document = DocumentRef(url=event.document.url + ".thumb.png", type="image/png")
        return [event.derive(self.node_id, document=document)]
