"""Model loader: open the bundled ONNX classifier and own its session.

The model ships with the application under a fixed file name. Loading builds
an onnxruntime InferenceSession with fixed classifier options, resolves the
label list, and wraps everything in a ModelHandle that is created once at
startup and released exactly once at shutdown.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from asclepius.ml.errors import ModelClosedError, ModelLoadError

if TYPE_CHECKING:
    from types import TracebackType

    from asclepius.config import Settings

logger = logging.getLogger(__name__)

MODEL_FILENAME = "cancer_classification.onnx"
LABELS_FILENAME = "cancer_classification_labels.txt"
LABELS_METADATA_KEY = "labels"
MODEL_TASK = "image_classification"


@dataclass(frozen=True)
class ClassifierOptions:
    """Fixed inference parameters for the bundled classifier."""

    score_threshold: float = 0.2
    max_results: int = 3
    num_threads: int = 4
    input_size: int = 224
    normalize_mean: float = 0.0
    normalize_std: float = 255.0


class TensorLayout(StrEnum):
    NHWC = "nhwc"
    NCHW = "nchw"


class ModelHandle:
    """Loaded model session plus the metadata needed to run it.

    Shared read-only across classification calls. ``close()`` drops the
    session; later calls to ``require_session()`` raise ModelClosedError.
    """

    def __init__(
        self,
        session: InferenceSession,
        labels: list[str],
        options: ClassifierOptions,
        *,
        input_name: str,
        layout: TensorLayout,
        path: Path,
    ) -> None:
        self._session: InferenceSession | None = session
        self._lock = threading.Lock()
        self.labels = labels
        self.options = options
        self.input_name = input_name
        self.layout = layout
        self.path = path

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._session is None

    def require_session(self) -> InferenceSession:
        """Return the live session, or raise if the handle was released."""
        with self._lock:
            session = self._session
        if session is None:
            raise ModelClosedError("Image classifier is not initialized")
        return session

    def close(self) -> None:
        """Release the inference session. Safe to call more than once."""
        with self._lock:
            if self._session is None:
                return
            self._session = None
        logger.info("Released model session for %s", self.path.name)

    def __enter__(self) -> ModelHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def load_model(settings: Settings, options: ClassifierOptions | None = None) -> ModelHandle:
    """Load the bundled classifier from ``settings.models_dir``.

    Raises:
        ModelLoadError: If the model file is missing, cannot be parsed by
            onnxruntime, or has no label list.
    """
    options = options or ClassifierOptions()
    models_dir = Path(settings.models_dir)
    model_path = models_dir / MODEL_FILENAME
    if not model_path.is_file():
        logger.error("Model file not found: %s", model_path)
        raise ModelLoadError(f"Model file not found: {model_path}")

    try:
        session = InferenceSession(
            str(model_path),
            sess_options=_build_session_options(settings, options),
            providers=_build_providers(settings),
        )
    except Exception as exc:
        logger.error("Model loading failed: %s", exc)
        raise ModelLoadError(f"Model file cannot be loaded: {model_path}") from exc

    labels = _load_labels(session, models_dir)
    model_inputs = session.get_inputs()
    if not model_inputs:
        raise ModelLoadError(f"Model declares no inputs: {model_path}")
    model_input = model_inputs[0]
    layout = _detect_layout(model_input.shape)

    logger.info(
        "Loaded %s (labels=%d, layout=%s, threads=%d, device=%s)",
        MODEL_FILENAME,
        len(labels),
        layout,
        options.num_threads,
        settings.device,
    )
    return ModelHandle(
        session,
        labels,
        options,
        input_name=model_input.name,
        layout=layout,
        path=model_path,
    )


# -- Internal -----------------------------------------------------------


def _load_labels(session: InferenceSession, models_dir: Path) -> list[str]:
    metadata = session.get_modelmeta().custom_metadata_map
    raw = metadata.get(LABELS_METADATA_KEY)
    if raw:
        try:
            labels = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ModelLoadError("Model label metadata is not valid JSON") from exc
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise ModelLoadError("Model label metadata must be a list of strings")
        if labels:
            return labels

    labels_path = models_dir / LABELS_FILENAME
    if labels_path.is_file():
        try:
            text = labels_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ModelLoadError(f"Cannot read label file {labels_path}: {exc}") from exc
        labels = [line.strip() for line in text.splitlines() if line.strip()]
        if labels:
            return labels

    raise ModelLoadError(f"No labels found in model metadata or {labels_path}")


def _detect_layout(shape: list[object]) -> TensorLayout:
    # Dynamic dimensions come back as strings or None.
    if len(shape) == 4 and shape[1] == 3:
        return TensorLayout.NCHW
    return TensorLayout.NHWC


def _build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def _build_session_options(settings: Settings, options: ClassifierOptions) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = options.num_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
