"""Classification pipeline: acquire, normalize, infer, and format.

Each call runs synchronously on the caller's thread and always ends in a
display string. Failures are translated to ``"Error in classification: ..."``
here and nowhere else.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from asclepius.ml.acquisition import FileMediaResolver, acquire
from asclepius.ml.errors import ClassificationError, NoResultError
from asclepius.ml.image_classifier import OnnxImageClassifier
from asclepius.ml.model_manager import load_model
from asclepius.ml.preprocessing import normalize

if TYPE_CHECKING:
    from types import TracebackType

    from asclepius.config import Settings
    from asclepius.ml.acquisition import ImageReference, MediaResolver
    from asclepius.ml.image_classifier import ClassificationResult, ImageClassifier
    from asclepius.ml.model_manager import ClassifierOptions, ModelHandle

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Error in classification: "


def format_result(result: ClassificationResult) -> str:
    """Render ``"<label> <confidence*100>%"``, e.g. ``"benign 87.0%"``."""
    percent = round(result.confidence * 100, 2)
    return f"{result.label} {percent}%"


def format_error(exc: BaseException) -> str:
    """Render a failure as a display string with the fixed error prefix."""
    cause = str(exc) or type(exc).__name__
    return f"{ERROR_PREFIX}{cause}"


def is_error(text: str) -> bool:
    return text.startswith(ERROR_PREFIX)


class ClassificationPipeline:
    """Owns a model handle and classifies images referenced by the caller."""

    def __init__(
        self,
        handle: ModelHandle,
        resolver: MediaResolver | None = None,
        *,
        classifier: ImageClassifier | None = None,
        max_pixels: int | None = None,
    ) -> None:
        self._handle = handle
        self._resolver = resolver if resolver is not None else FileMediaResolver()
        self._classifier = classifier if classifier is not None else OnnxImageClassifier(handle)
        self._max_pixels = max_pixels

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        resolver: MediaResolver | None = None,
        options: ClassifierOptions | None = None,
    ) -> ClassificationPipeline:
        """Load the bundled model and build a pipeline around it.

        Raises:
            ModelLoadError: If the model cannot be loaded.
        """
        handle = load_model(settings, options)
        return cls(handle, resolver, max_pixels=settings.max_image_pixels)

    @property
    def handle(self) -> ModelHandle:
        return self._handle

    @property
    def model_name(self) -> str:
        return self._classifier.model_name

    def classify_static_image(self, ref: ImageReference) -> str:
        """Classify the referenced image and return a display string. Never raises."""
        try:
            self._handle.require_session()
            raster = acquire(ref, self._resolver, self._max_pixels)
            normalized = normalize(raster, self._resolver, self._handle.options.input_size)
            result = self._classifier.classify(normalized)
        except NoResultError as exc:
            return format_error(exc)
        except ClassificationError as exc:
            logger.warning("Classification of %s failed: %s", ref, exc)
            return format_error(exc)
        except Exception as exc:
            logger.exception("Unexpected error classifying %s", ref)
            return format_error(exc)
        return format_result(result)

    def close(self) -> None:
        """Release the model handle. Safe to call more than once."""
        self._handle.close()

    def __enter__(self) -> ClassificationPipeline:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
