"""Inference adapter: run the loaded classifier and pick the top label."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from asclepius.ml.errors import NoResultError
from asclepius.ml.preprocessing import to_input_tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from asclepius.ml.acquisition import RasterImage
    from asclepius.ml.model_manager import ClassifierOptions, ModelHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, raster: RasterImage) -> ClassificationResult:
        """Classify a normalized image and return the top prediction.

        Raises:
            NoResultError: If no candidate clears the confidence threshold.
        """
        ...


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float64]:
    """Return per-label confidences in [0, 1].

    Scores already in range (softmax or sigmoid outputs) are reported as the
    model produced them; raw logits are converted with a softmax.
    """
    values = np.asarray(scores, dtype=np.float64).ravel()
    if not values.size or ((values >= 0.0).all() and (values <= 1.0).all()):
        return values
    shifted = np.exp(values - values.max())
    return shifted / shifted.sum()


def rank(
    scores: NDArray[np.float32],
    labels: Sequence[str],
    options: ClassifierOptions,
) -> list[ClassificationResult]:
    """Filter by threshold, sort by confidence descending, and truncate.

    Ties keep label order.
    """
    probabilities = to_probabilities(scores)
    if probabilities.size != len(labels):
        raise ValueError(f"Model returned {probabilities.size} scores for {len(labels)} labels")

    candidates = [
        ClassificationResult(label=label, confidence=float(score))
        for label, score in zip(labels, probabilities, strict=True)
        if score >= options.score_threshold
    ]
    candidates.sort(key=lambda result: result.confidence, reverse=True)
    return candidates[: options.max_results]


def classify(raster: RasterImage, handle: ModelHandle) -> ClassificationResult:
    """Run the model on a normalized image and return the top-scoring label.

    Raises:
        ModelClosedError: If the model handle was released.
        NoResultError: If every candidate falls below the threshold.
    """
    session = handle.require_session()
    tensor = to_input_tensor(raster.image, handle.options, handle.layout)

    started = time.perf_counter()
    outputs = session.run(None, {handle.input_name: tensor})
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.debug("Inference time: %.1f ms", elapsed_ms)

    results = rank(outputs[0], handle.labels, handle.options)
    if not results:
        logger.info("No results above threshold %.2f for %s", handle.options.score_threshold, raster.reference)
        raise NoResultError

    top = results[0]
    logger.debug("Top result: %s with confidence %.4f", top.label, top.confidence)
    return top


class OnnxImageClassifier:
    """ImageClassifier backed by a loaded ONNX model handle."""

    def __init__(self, handle: ModelHandle) -> None:
        self._handle = handle

    @property
    def model_name(self) -> str:
        return self._handle.path.name

    def classify(self, raster: RasterImage) -> ClassificationResult:
        return classify(raster, self._handle)
