"""Tests for the bundled model loader."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from asclepius.config import Settings
from asclepius.ml.errors import ModelClosedError, ModelLoadError
from asclepius.ml.model_manager import (
    LABELS_FILENAME,
    MODEL_FILENAME,
    ClassifierOptions,
    ModelHandle,
    TensorLayout,
    _build_providers,
    load_model,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(models_dir: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(models_dir),
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _fake_session(
    metadata: dict[str, str] | None = None,
    shape: list[object] | None = None,
) -> MagicMock:
    session = MagicMock()
    session.get_modelmeta.return_value.custom_metadata_map = metadata or {}
    session.get_inputs.return_value = [SimpleNamespace(name="input_1", shape=shape or [1, 224, 224, 3])]
    return session


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    (tmp_path / MODEL_FILENAME).write_bytes(b"onnx")
    return tmp_path


# ---------------------------------------------------------------------------
# ClassifierOptions
# ---------------------------------------------------------------------------


class TestClassifierOptions:
    def test_fixed_defaults(self) -> None:
        options = ClassifierOptions()
        assert options.score_threshold == 0.2
        assert options.max_results == 3
        assert options.num_threads == 4
        assert options.input_size == 224

    def test_options_are_frozen(self) -> None:
        options = ClassifierOptions()
        with pytest.raises(AttributeError):
            options.max_results = 5  # type: ignore[misc]


# ---------------------------------------------------------------------------
# load_model
# ---------------------------------------------------------------------------


class TestLoadModel:
    def test_missing_model_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ModelLoadError, match="not found"):
            load_model(_make_settings(tmp_path))

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_malformed_model_raises(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.side_effect = RuntimeError("INVALID_PROTOBUF")

        with pytest.raises(ModelLoadError, match="cannot be loaded") as excinfo:
            load_model(_make_settings(models_dir))

        assert isinstance(excinfo.value.__cause__, RuntimeError)

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_labels_from_metadata(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.return_value = _fake_session({"labels": json.dumps(["Cancer", "Non Cancer"])})

        handle = load_model(_make_settings(models_dir))

        assert handle.labels == ["Cancer", "Non Cancer"]
        assert handle.input_name == "input_1"
        assert handle.path == models_dir / MODEL_FILENAME

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_labels_from_sidecar_file(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        (models_dir / LABELS_FILENAME).write_text("Cancer\n\nNon Cancer\n", encoding="utf-8")
        mock_session_cls.return_value = _fake_session()

        handle = load_model(_make_settings(models_dir))

        assert handle.labels == ["Cancer", "Non Cancer"]

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_missing_labels_raises(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.return_value = _fake_session()

        with pytest.raises(ModelLoadError, match="No labels"):
            load_model(_make_settings(models_dir))

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_invalid_label_metadata_raises(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.return_value = _fake_session({"labels": "{not json"})

        with pytest.raises(ModelLoadError, match="not valid JSON"):
            load_model(_make_settings(models_dir))

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_undecodable_label_file_raises(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        (models_dir / LABELS_FILENAME).write_bytes(b"\xff\xfe\xfa")
        mock_session_cls.return_value = _fake_session()

        with pytest.raises(ModelLoadError, match="Cannot read label file") as excinfo:
            load_model(_make_settings(models_dir))

        assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_model_without_inputs_raises(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        session = _fake_session({"labels": '["a"]'})
        session.get_inputs.return_value = []
        mock_session_cls.return_value = session

        with pytest.raises(ModelLoadError, match="no inputs"):
            load_model(_make_settings(models_dir))

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_session_uses_fixed_thread_count(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.return_value = _fake_session({"labels": '["a"]'})

        load_model(_make_settings(models_dir, inter_op_threads=2))

        sess_options = mock_session_cls.call_args.kwargs["sess_options"]
        assert sess_options.intra_op_num_threads == 4
        assert sess_options.inter_op_num_threads == 2
        assert mock_session_cls.call_args.kwargs["providers"] == ["CPUExecutionProvider"]

    @patch("asclepius.ml.model_manager.InferenceSession")
    def test_layout_detection(self, mock_session_cls: MagicMock, models_dir: Path) -> None:
        mock_session_cls.return_value = _fake_session({"labels": '["a"]'}, shape=["batch", 3, 224, 224])
        assert load_model(_make_settings(models_dir)).layout == TensorLayout.NCHW

        mock_session_cls.return_value = _fake_session({"labels": '["a"]'}, shape=[None, 224, 224, 3])
        assert load_model(_make_settings(models_dir)).layout == TensorLayout.NHWC


# ---------------------------------------------------------------------------
# ModelHandle
# ---------------------------------------------------------------------------


class TestModelHandle:
    def _make_handle(self) -> ModelHandle:
        return ModelHandle(
            MagicMock(),
            ["Cancer", "Non Cancer"],
            ClassifierOptions(),
            input_name="input_1",
            layout=TensorLayout.NHWC,
            path=Path(MODEL_FILENAME),
        )

    def test_require_session_returns_live_session(self) -> None:
        handle = self._make_handle()
        assert handle.require_session() is not None
        assert handle.closed is False

    def test_close_is_idempotent(self) -> None:
        handle = self._make_handle()
        handle.close()
        handle.close()
        assert handle.closed is True

    def test_require_session_after_close_raises(self) -> None:
        handle = self._make_handle()
        handle.close()
        with pytest.raises(ModelClosedError, match="not initialized"):
            handle.require_session()

    def test_context_manager_closes(self) -> None:
        with self._make_handle() as handle:
            assert handle.closed is False
        assert handle.closed is True


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TestProviders:
    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        assert _build_providers(_make_settings(tmp_path, device="cpu")) == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        providers = _build_providers(_make_settings(tmp_path, device="cuda"))
        assert len(providers) == 2
        provider_name, provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        providers = _build_providers(_make_settings(tmp_path, device="openvino"))
        provider_name, _provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert providers[1] == "CPUExecutionProvider"
