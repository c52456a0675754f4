"""Image preprocessing: scaling, EXIF orientation, and model-input tensors.

Normalization is best-effort. Orientation metadata that cannot be read is
treated as unspecified and the scaled image is returned unrotated.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import ExifTags, Image

from asclepius.ml.acquisition import RasterImage
from asclepius.ml.model_manager import ClassifierOptions, TensorLayout

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from asclepius.ml.acquisition import ImageReference, MediaResolver

logger = logging.getLogger(__name__)

INPUT_SIZE = 224


class Orientation(IntEnum):
    """EXIF orientation tag values that call for a rotation."""

    UNSPECIFIED = 0
    ROTATE_90 = 6
    ROTATE_180 = 3
    ROTATE_270 = 8

    @property
    def degrees(self) -> int:
        """Clockwise rotation needed to display the image upright."""
        return _DEGREES[self]

    @classmethod
    def from_tag(cls, value: object) -> Orientation:
        """Map a raw tag value; anything other than 90/180/270 is unspecified."""
        try:
            return cls(int(value))  # type: ignore[call-overload]
        except (TypeError, ValueError):
            return cls.UNSPECIFIED


_DEGREES: dict[Orientation, int] = {
    Orientation.UNSPECIFIED: 0,
    Orientation.ROTATE_90: 90,
    Orientation.ROTATE_180: 180,
    Orientation.ROTATE_270: 270,
}

# Clockwise rotations expressed as Pillow's counter-clockwise transposes.
_TRANSPOSE: dict[Orientation, Image.Transpose] = {
    Orientation.ROTATE_90: Image.Transpose.ROTATE_270,
    Orientation.ROTATE_180: Image.Transpose.ROTATE_180,
    Orientation.ROTATE_270: Image.Transpose.ROTATE_90,
}

# Fixed orientation hint applied to every model input ("right-top").
INFERENCE_ORIENTATION_HINT = Orientation.ROTATE_90


def read_orientation(ref: ImageReference, resolver: MediaResolver) -> Orientation:
    """Read the EXIF orientation of the original image source.

    Never raises: unreadable or malformed metadata yields UNSPECIFIED.
    """
    try:
        with resolver.open(ref) as stream, Image.open(stream) as source:
            tag = source.getexif().get(ExifTags.Base.Orientation)
    except Exception as exc:  # noqa: BLE001
        logger.debug("Could not read orientation for %s: %s", ref, exc)
        return Orientation.UNSPECIFIED
    return Orientation.from_tag(tag)


def scale(image: Image.Image, size: int = INPUT_SIZE) -> Image.Image:
    """Resize to a size x size square with bilinear filtering, ignoring aspect ratio."""
    if image.size == (size, size):
        return image
    return image.resize((size, size), Image.Resampling.BILINEAR)


def rotate(image: Image.Image, orientation: Orientation) -> Image.Image:
    """Rotate clockwise by the angle the orientation tag calls for."""
    transpose = _TRANSPOSE.get(orientation)
    if transpose is None:
        return image
    return image.transpose(transpose)


def normalize(raster: RasterImage, resolver: MediaResolver, size: int = INPUT_SIZE) -> RasterImage:
    """Scale to the model's input size, then restore the upright orientation."""
    scaled = scale(raster.image, size)
    orientation = read_orientation(raster.reference, resolver)
    if orientation is not Orientation.UNSPECIFIED:
        logger.debug("Rotating %s by %d degrees", raster.reference, orientation.degrees)
    return RasterImage(image=rotate(scaled, orientation), reference=raster.reference)


def to_input_tensor(
    image: Image.Image,
    options: ClassifierOptions,
    layout: TensorLayout = TensorLayout.NHWC,
    hint: Orientation = INFERENCE_ORIENTATION_HINT,
) -> NDArray[np.float32]:
    """Build a batched float32 model input from an RGB image.

    Resizes (bilinear), casts to float32, applies ``(x - mean) / std`` and
    the orientation hint, then adds the batch axis.

    Returns:
        Array of shape (1, H, W, 3) for NHWC models or (1, 3, H, W) for NCHW.
    """
    resized = scale(image.convert("RGB"), options.input_size)
    pixels = np.asarray(resized, dtype=np.float32)
    pixels = (pixels - np.float32(options.normalize_mean)) / np.float32(options.normalize_std)
    pixels = np.rot90(pixels, k=-(hint.degrees // 90), axes=(0, 1))

    tensor = np.ascontiguousarray(pixels[np.newaxis, ...], dtype=np.float32)
    if layout == TensorLayout.NCHW:
        tensor = np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))
    return tensor
