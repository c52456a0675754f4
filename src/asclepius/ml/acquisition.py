"""Image acquisition: resolve an image reference into a decoded raster image."""

from __future__ import annotations

import io
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol, TypeAlias
from urllib.parse import urlparse
from urllib.request import url2pathname

from PIL import Image

from asclepius.ml.errors import ImageAcquisitionError

logger = logging.getLogger(__name__)

ImageReference: TypeAlias = str

MEMORY_SCHEME = "memory"


@dataclass(frozen=True)
class RasterImage:
    """A decoded RGB image and the reference it was read from."""

    image: Image.Image
    reference: ImageReference

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size


class MediaResolver(Protocol):
    """Protocol for the host's media-access capability."""

    def open(self, ref: ImageReference) -> BinaryIO:
        """Open the referenced media for binary reading.

        Raises:
            OSError: If the reference does not resolve to readable media.
            ValueError: If the reference is malformed or uses an unsupported scheme.
        """
        ...


class FileMediaResolver:
    """Resolves plain filesystem paths and ``file://`` URIs."""

    def open(self, ref: ImageReference) -> BinaryIO:
        return self.to_path(ref).open("rb")

    @staticmethod
    def to_path(ref: ImageReference) -> Path:
        if not ref:
            raise ValueError("Empty image reference")
        parsed = urlparse(ref)
        if parsed.scheme == "file":
            return Path(url2pathname(parsed.path))
        # Single-letter schemes are Windows drive letters.
        if parsed.scheme and len(parsed.scheme) > 1:
            raise ValueError(f"Unsupported image reference scheme: {parsed.scheme}")
        return Path(ref)


class InMemoryMediaResolver:
    """Holds uploaded image bytes under ``memory://`` references.

    Entries live only until ``discard()``; nothing is written to disk.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, bytes] = {}

    def register(self, data: bytes) -> ImageReference:
        ref = f"{MEMORY_SCHEME}://{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[ref] = data
        return ref

    def discard(self, ref: ImageReference) -> None:
        with self._lock:
            self._blobs.pop(ref, None)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._blobs)

    def open(self, ref: ImageReference) -> BinaryIO:
        with self._lock:
            data = self._blobs.get(ref)
        if data is None:
            raise FileNotFoundError(f"No image registered for {ref}")
        return io.BytesIO(data)


def acquire(ref: ImageReference, resolver: MediaResolver, max_pixels: int | None = None) -> RasterImage:
    """Resolve and decode an image reference into an RGB raster image.

    Args:
        ref: Opaque image locator.
        resolver: Media-access capability used to open the reference.
        max_pixels: Reject images whose width*height exceeds this limit.

    Returns:
        The fully decoded RGB image.

    Raises:
        ImageAcquisitionError: If the reference cannot be opened, the bytes are
            not a decodable image, or the image exceeds ``max_pixels``.
    """
    try:
        with resolver.open(ref) as stream, Image.open(stream) as opened:
            width, height = opened.size
            if max_pixels is not None and width * height > max_pixels:
                raise ValueError(f"Image of {width}x{height} pixels exceeds the limit of {max_pixels}")
            opened.load()
            image = opened.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning("Failed to acquire image %s: %s", ref, exc)
        raise ImageAcquisitionError(f"Error converting reference to image: {exc}") from exc

    logger.debug("Acquired %s (%dx%d)", ref, image.width, image.height)
    return RasterImage(image=image, reference=ref)
