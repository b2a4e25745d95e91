"""Local filesystem object storage.

Objects are stored under ``<root>/<first two hash chars>/<sha256><ext>`` and
addressed by ``file://`` URLs. Writes go to a temporary file that is renamed
into place, so readers never observe partial content.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiofiles  # type: ignore[import-untyped]
import aiofiles.os  # type: ignore[import-untyped]

from docchain.errors import StorageError
from docchain.transport.memory import content_key

logger = logging.getLogger(__name__)


class LocalObjectStorage:
    """Content-addressed storage in a local directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def path_for(self, url: str) -> Path:
        """Resolve a ``file://`` URL (or plain path) to a path inside the root.

        Raises:
            StorageError: If the URL points outside the storage root
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("", "file"):
            raise StorageError(url, f"unsupported scheme '{parsed.scheme}'")
        path = Path(unquote(parsed.path)).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(url, "path is outside the storage root")
        return path

    async def get(self, url: str) -> bytes:
        path = self.path_for(url)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise StorageError(url, "object not found") from None
        except OSError as e:
            raise StorageError(url, str(e)) from e

    async def put(self, data: bytes, media_type: str) -> str:
        key = content_key(data, media_type)
        path = self.root / key[:2] / key
        url = path.as_uri()

        if await aiofiles.os.path.exists(path):
            logger.debug("Object %s already stored", key)
            return url

        tmp_path = path.with_name(f".{key}.{uuid.uuid4().hex}.tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(url, str(e)) from e
        finally:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)

        logger.debug("Stored %d bytes as %s", len(data), key)
        return url


__all__ = ["LocalObjectStorage"]
