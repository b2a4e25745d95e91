"""Document events exchanged between pipeline nodes.

Core Types:
    - EventType: Kind of document state change
    - DocumentRef: Pointer to a document in storage with its MIME type
    - DocumentEvent: Immutable event published on node channels
    - MediaType: Parsed MIME type with wildcard matching
"""

from docchain.events.media_types import (
    InvalidMediaTypeError,
    MediaType,
    is_valid_media_type,
    media_type_matches,
    patterns_overlap,
)
from docchain.events.types import SPEC_VERSION, DocumentEvent, DocumentRef, EventType

__all__ = [
    "SPEC_VERSION",
    "EventType",
    "DocumentRef",
    "DocumentEvent",
    "InvalidMediaTypeError",
    "MediaType",
    "is_valid_media_type",
    "media_type_matches",
    "patterns_overlap",
]
