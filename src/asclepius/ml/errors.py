"""Exceptions raised by the classification pipeline."""

from __future__ import annotations


class ClassificationError(Exception):
    """Base exception for classification failures."""


class ModelLoadError(ClassificationError):
    """The bundled model could not be loaded. Fatal at startup."""


class ModelClosedError(ModelLoadError):
    """A classification call met a model handle that was already released."""


class ImageAcquisitionError(ClassificationError):
    """An image reference could not be resolved or decoded."""


class NoResultError(ClassificationError):
    """No candidate cleared the confidence threshold."""

    def __init__(self, message: str = "No results") -> None:
        super().__init__(message)
